"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class SourceType(str, Enum):
    HTML = "HTML"
    JSON = "JSON"
    RSS = "RSS"
    JS_RENDERED = "JS_RENDERED"
    FEED = "FEED"


class SourceKind(str, Enum):
    DIRECT = "DIRECT"
    AFFILIATE_FEED = "AFFILIATE_FEED"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class UserTier(str, Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"


class AlertRuleType(str, Enum):
    PRICE_DROP = "PRICE_DROP"
    BACK_IN_STOCK = "BACK_IN_STOCK"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Merchant(Base):
    """Dealer account owning one or more retailers."""

    __tablename__ = "merchants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_status: Mapped[str] = mapped_column(
        String(16), default=SubscriptionStatus.ACTIVE.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    retailers: Mapped[list["Retailer"]] = relationship("Retailer", back_populates="merchant")


class Retailer(Base):
    """Storefront that prices are observed at."""

    __tablename__ = "retailers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    website: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    merchant_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    merchant: Mapped[Optional["Merchant"]] = relationship("Merchant", back_populates="retailers")


class Source(Base):
    """Configured upstream the scheduler harvests on an interval."""

    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    source_type: Mapped[str] = mapped_column(String(16), default=SourceType.HTML.value, nullable=False)
    source_kind: Mapped[str] = mapped_column(String(16), default=SourceKind.DIRECT.value, nullable=False)
    # {"type": "none"|"query_param"|"path", "param": "page", "startValue": 1, "increment": 1, "maxPages": 10}
    pagination_config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    # CSS selectors for HTML sources: {"item": ..., "name": ..., "price": ..., "url": ...}
    scrape_config: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    affiliate_network: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    retailer_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("retailers.id", ondelete="SET NULL"), nullable=True
    )
    feed_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    interval_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    retailer: Mapped[Optional["Retailer"]] = relationship("Retailer")
    executions: Mapped[list["Execution"]] = relationship(
        "Execution", back_populates="source", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_sources_due", "enabled", "next_run_at"),)


class Execution(Base):
    """One harvest run of a source."""

    __tablename__ = "executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(16), default=ExecutionStatus.PENDING.value, nullable=False
    )
    items_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_upserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    source: Mapped["Source"] = relationship("Source", back_populates="executions")
    logs: Mapped[list["ExecutionLog"]] = relationship(
        "ExecutionLog",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="ExecutionLog.id",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'SUCCESS', 'FAILED')", name="ck_execution_status"
        ),
    )


class ExecutionLog(Base):
    """Append-only audit entry for an execution."""

    __tablename__ = "execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("executions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    level: Mapped[str] = mapped_column(String(8), nullable=False)  # INFO, WARN, ERROR
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    execution: Mapped["Execution"] = relationship("Execution", back_populates="logs")


class Product(Base):
    """Canonical product keyed by UPC or content hash."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    caliber: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    grain_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    case_material: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    purpose: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    load_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class SourceProduct(Base):
    """A product listing as seen at one source URL."""

    __tablename__ = "source_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sources.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    identity_key: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    product_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    last_seen_execution_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("source_id", "url", name="uq_source_product_source_url"),
    )


class Price(Base):
    """Observed price. Rows are only added when price or stock changes."""

    __tablename__ = "prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id", ondelete="CASCADE"), nullable=False
    )
    source_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("sources.id", ondelete="SET NULL"), nullable=True
    )
    source_product_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("source_products.id", ondelete="SET NULL"), nullable=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    in_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ingestion_run_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_prices_product_retailer", "product_id", "retailer_id"),
    )


class User(Base):
    """Alert subscriber."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tier: Mapped[str] = mapped_column(String(16), default=UserTier.FREE.value, nullable=False)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class WatchlistItem(Base):
    """A user's watch on one product, carrying notification preferences and cooldown state."""

    __tablename__ = "watchlist_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    price_drop_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    back_in_stock_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    min_drop_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    min_drop_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    stock_alert_cooldown_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    last_price_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_stock_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Two-phase claim state, one pair per rule type
    price_claim_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    stock_claim_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stock_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_watchlist_user_product"),
    )


class Alert(Base):
    """Alert rule a user has enabled for a watched product."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    watchlist_item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watchlist_items.id", ondelete="CASCADE"), nullable=False
    )
    rule_type: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User")
    watchlist_item: Mapped["WatchlistItem"] = relationship("WatchlistItem")
