"""Dealer visibility predicate."""

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from harvester.db.models import Merchant, Price, Retailer, SubscriptionStatus

VISIBLE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.EXPIRED.value,
)


def visible_retailer_clause():
    """Retailers without a merchant, or whose merchant is ACTIVE or EXPIRED."""
    return or_(
        Retailer.merchant_id.is_(None),
        Merchant.subscription_status.in_(VISIBLE_SUBSCRIPTION_STATUSES),
    )


async def is_product_visible(session: AsyncSession, product_id: str) -> bool:
    """
    True when at least one visible retailer carries a price for the product.

    SUSPENDED and CANCELLED merchants hide their prices, so a product only
    priced by them must not trigger alerts.
    """
    stmt = (
        select(Price.id)
        .join(Retailer, Price.retailer_id == Retailer.id)
        .outerjoin(Merchant, Retailer.merchant_id == Merchant.id)
        .where(Price.product_id == product_id, visible_retailer_clause())
        .limit(1)
    )
    return (await session.scalar(stmt)) is not None
