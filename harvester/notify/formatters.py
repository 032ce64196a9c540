"""Plain-text and minimal HTML rendering of alert emails."""

from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Optional

from harvester.config import settings
from harvester.db.models import AlertRuleType


@dataclass
class AlertContext:
    """Everything an alert email shows."""

    rule_type: str
    user_name: Optional[str]
    product_id: str
    product_name: str
    current_price: Decimal
    previous_price: Optional[Decimal] = None
    retailer_name: Optional[str] = None
    retailer_url: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def product_url(self) -> str:
        return f"{settings.frontend_url.rstrip('/')}/products/{self.product_id}"

    @property
    def savings(self) -> Optional[Decimal]:
        if self.previous_price is None or self.previous_price <= self.current_price:
            return None
        return self.previous_price - self.current_price


@dataclass
class EmailMessage:
    subject: str
    text: str
    html: str


def _subject(ctx: AlertContext) -> str:
    if ctx.rule_type == AlertRuleType.BACK_IN_STOCK.value:
        return f"Back in Stock: {ctx.product_name}"
    return f"Price Drop Alert: {ctx.product_name}"


def _lines(ctx: AlertContext) -> list[str]:
    where = f" at {ctx.retailer_name}" if ctx.retailer_name else ""
    lines = [f"Hi {ctx.user_name or 'there'},", ""]
    if ctx.rule_type == AlertRuleType.BACK_IN_STOCK.value:
        lines.append(f"{ctx.product_name} is back in stock{where} for ${ctx.current_price:.2f}.")
    else:
        lines.append(f"{ctx.product_name} dropped to ${ctx.current_price:.2f}{where}.")
        if ctx.savings is not None:
            lines.append(f"Was ${ctx.previous_price:.2f}, you save ${ctx.savings:.2f}.")
    lines.append("")
    if ctx.retailer_url:
        lines.append(f"Buy now: {ctx.retailer_url}")
    lines.append(f"Product details: {ctx.product_url}")
    lines.append("")
    lines.append(f"Manage your alerts: {settings.frontend_url.rstrip('/')}/dashboard/alerts")
    return lines


def render_alert_email(ctx: AlertContext) -> EmailMessage:
    lines = _lines(ctx)
    paragraphs = "".join(f"<p>{escape(line)}</p>" for line in lines if line)
    return EmailMessage(
        subject=_subject(ctx),
        text="\n".join(lines),
        html=f"<html><body>{paragraphs}</body></html>",
    )
