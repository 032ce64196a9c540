"""Price variance classification for written price changes."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from harvester import metrics
from harvester.config import settings
from harvester.db.models import SourceKind

Number = Union[Decimal, float, int]


class VarianceAction(str, Enum):
    ACCEPTED = "ACCEPTED"
    QUARANTINED = "QUARANTINED"
    CLAMPED = "CLAMPED"


@dataclass(frozen=True)
class VarianceObservation:
    """One price change as seen by the variance check."""

    product_id: str
    retailer_id: int
    old_price: Decimal
    new_price: Decimal
    variance_pct: float
    bucket: str
    exceeded: bool
    action: VarianceAction


def calculate_variance_pct(old_price: Number, new_price: Number) -> float:
    """Absolute change as a percentage of the old price."""
    old = float(old_price)
    new = float(new_price)
    if old == 0:
        return 100.0 if new > 0 else 0.0
    return abs((new - old) / old) * 100


def variance_to_bucket(variance_pct: float) -> str:
    """Bucket label; each bucket includes its upper bound."""
    if variance_pct <= 10:
        return "0-10%"
    if variance_pct <= 25:
        return "10-25%"
    if variance_pct <= 50:
        return "25-50%"
    if variance_pct <= 100:
        return "50-100%"
    return ">100%"


def source_kind_label(kind: Optional[str]) -> str:
    if kind in {k.value for k in SourceKind}:
        return kind
    return SourceKind.UNKNOWN.value


def observe_price_change(
    product_id: str,
    retailer_id: int,
    old_price: Decimal,
    new_price: Decimal,
    source_kind: Optional[str],
    threshold_pct: Optional[float] = None,
    action: VarianceAction = VarianceAction.ACCEPTED,
) -> VarianceObservation:
    """
    Classify a price change and record it in the writer metrics.

    Every change lands in the delta histogram; changes above the threshold
    also increment the exceeded counter.
    """
    threshold = settings.price_variance_alert_threshold_pct if threshold_pct is None else threshold_pct
    variance_pct = calculate_variance_pct(old_price, new_price)
    bucket = variance_to_bucket(variance_pct)
    exceeded = variance_pct > threshold

    metrics.record_price_variance(
        source_kind_label(source_kind),
        variance_pct,
        bucket,
        action.value,
        exceeded,
    )
    return VarianceObservation(
        product_id=product_id,
        retailer_id=retailer_id,
        old_price=old_price,
        new_price=new_price,
        variance_pct=round(variance_pct, 2),
        bucket=bucket,
        exceeded=exceeded,
        action=action,
    )
