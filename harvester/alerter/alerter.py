"""Alert evaluation and tiered notification delivery."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvester import metrics
from harvester.alerter.rate_limit import RateLimitDecision, RateLimiter
from harvester.alerter.rules import RuleDecision, evaluate_back_in_stock, evaluate_price_drop
from harvester.alerter.visibility import is_product_visible
from harvester.config import settings
from harvester.db.audit import ExecutionLogger
from harvester.db.models import (
    Alert,
    AlertRuleType,
    Price,
    Product,
    Retailer,
    User,
    UserTier,
    WatchlistItem,
    utcnow,
)
from harvester.notify.email import EmailSender
from harvester.notify.formatters import AlertContext, render_alert_email
from harvester.queue.base import Queues
from harvester.queue.jobs import NOTIFY_QUEUE, AlertJob, DelayedNotificationJob, notify_job_id

logger = logging.getLogger(__name__)


class _ClaimColumns:
    """Watchlist columns backing the claim and cooldown of one rule type."""

    def __init__(self, rule_type: str):
        if rule_type == AlertRuleType.BACK_IN_STOCK.value:
            self.key = WatchlistItem.stock_claim_key
            self.claimed_at = WatchlistItem.stock_claimed_at
            self.notified_at = WatchlistItem.last_stock_notified_at
        else:
            self.key = WatchlistItem.price_claim_key
            self.claimed_at = WatchlistItem.price_claimed_at
            self.notified_at = WatchlistItem.last_price_notified_at


def tier_delay_minutes(tier: str) -> int:
    if tier == UserTier.PREMIUM.value:
        return settings.premium_tier_delay_minutes
    return settings.free_tier_delay_minutes


def cooldown_for(rule_type: str, item: WatchlistItem) -> timedelta:
    if rule_type == AlertRuleType.BACK_IN_STOCK.value:
        return timedelta(hours=item.stock_alert_cooldown_hours)
    return timedelta(hours=settings.price_drop_cooldown_hours)


def evaluate_rule(alert: Alert, item: WatchlistItem, job) -> RuleDecision:
    if alert.rule_type == AlertRuleType.PRICE_DROP.value:
        if not item.price_drop_enabled:
            return RuleDecision(False, "rule_disabled")
        return evaluate_price_drop(
            job.old_price, job.new_price, item.min_drop_percent, item.min_drop_amount
        )
    if alert.rule_type == AlertRuleType.BACK_IN_STOCK.value:
        if not item.back_in_stock_enabled:
            return RuleDecision(False, "rule_disabled")
        return evaluate_back_in_stock(job.old_in_stock, job.new_in_stock)
    return RuleDecision(False, "unknown_rule")


async def claim(
    session: AsyncSession,
    item: WatchlistItem,
    rule_type: str,
    claim_key: str,
    now: datetime,
) -> bool:
    """
    Phase one: take the watchlist item's claim for a rule type.

    Succeeds only if the item is outside its cooldown and no fresh claim is
    held. Concurrent alert workers race on this single conditional UPDATE.
    """
    cols = _ClaimColumns(rule_type)
    stale_before = now - timedelta(seconds=settings.alert_claim_stale_seconds)
    cooldown_before = now - cooldown_for(rule_type, item)
    result = await session.execute(
        update(WatchlistItem)
        .where(
            WatchlistItem.id == item.id,
            or_(cols.key.is_(None), cols.claimed_at < stale_before),
            or_(cols.notified_at.is_(None), cols.notified_at < cooldown_before),
        )
        .values({cols.key: claim_key, cols.claimed_at: now})
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def commit_claim(session: AsyncSession, item_id: int, rule_type: str, claim_key: str, now: datetime) -> bool:
    """Phase two: record the notification time and drop the claim."""
    cols = _ClaimColumns(rule_type)
    result = await session.execute(
        update(WatchlistItem)
        .where(WatchlistItem.id == item_id, cols.key == claim_key)
        .values({cols.notified_at: now, cols.key: None, cols.claimed_at: None})
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def release_claim(session: AsyncSession, item_id: int, rule_type: str, claim_key: str):
    cols = _ClaimColumns(rule_type)
    await session.execute(
        update(WatchlistItem)
        .where(WatchlistItem.id == item_id, cols.key == claim_key)
        .values({cols.key: None, cols.claimed_at: None})
        .execution_options(synchronize_session=False)
    )
    await session.commit()


class Alerter:
    """
    Alert queue handler.

    For one price/stock change it evaluates every enabled alert on the
    product, applies cooldown claims and the per-user rate limit, then
    either sends immediately (PREMIUM) or queues a delayed notification.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queues: Queues,
        rate_limiter: RateLimiter,
        email_sender: EmailSender,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.queues = queues
        self.rate_limiter = rate_limiter
        self.email_sender = email_sender
        self.clock = clock

    async def handle(self, job: AlertJob):
        async with self.session_factory() as session:
            audit = ExecutionLogger(session, job.execution_id)
            await audit.info(
                "ALERT_EVALUATE",
                f"Evaluating alerts for product {job.product_id}",
                productId=job.product_id,
                retailerId=job.retailer_id,
                oldPrice=str(job.old_price) if job.old_price is not None else None,
                newPrice=str(job.new_price),
                oldInStock=job.old_in_stock,
                inStock=job.new_in_stock,
            )
            await session.commit()

            try:
                triggered = await self.evaluate(session, audit, job)
            except Exception as e:
                await session.rollback()
                await audit.error(
                    "ALERT_EVALUATE_FAIL",
                    f"Alert evaluation failed: {e}",
                    productId=job.product_id,
                )
                await session.commit()
                raise

            await audit.info(
                "ALERT_EVALUATE_OK",
                f"Triggered {triggered} alerts for product {job.product_id}",
                triggeredCount=triggered,
            )
            await session.commit()

    async def evaluate(self, session: AsyncSession, audit: ExecutionLogger, job: AlertJob) -> int:
        if not await is_product_visible(session, job.product_id):
            metrics.alerts_suppressed_total.labels(reason="dealer_hidden").inc()
            await audit.info(
                "ALERT_SKIPPED",
                f"Product {job.product_id} has no visible retailer, skipping alerts",
                reason="dealer_hidden",
            )
            return 0

        rows = (
            await session.execute(
                select(Alert, WatchlistItem, User)
                .join(WatchlistItem, Alert.watchlist_item_id == WatchlistItem.id)
                .join(User, Alert.user_id == User.id)
                .where(
                    Alert.product_id == job.product_id,
                    Alert.enabled.is_(True),
                    WatchlistItem.notifications_enabled.is_(True),
                    User.notifications_enabled.is_(True),
                )
                .order_by(Alert.id)
            )
        ).all()

        triggered = 0
        for alert, item, user in rows:
            decision = evaluate_rule(alert, item, job)
            metrics.alerts_evaluated_total.labels(
                rule_type=alert.rule_type, result="fired" if decision.fired else "not_fired"
            ).inc()
            if not decision.fired:
                continue
            if await self._deliver(session, audit, job, alert, item, user, decision):
                triggered += 1
        return triggered

    async def _deliver(
        self,
        session: AsyncSession,
        audit: ExecutionLogger,
        job: AlertJob,
        alert: Alert,
        item: WatchlistItem,
        user: User,
        decision: RuleDecision,
    ) -> bool:
        now = self.clock()
        claim_key = uuid.uuid4().hex

        if not await claim(session, item, alert.rule_type, claim_key, now):
            metrics.alerts_suppressed_total.labels(reason="cooldown").inc()
            await audit.info(
                "ALERT_SUPPRESSED",
                f"Alert {alert.id} in cooldown or already claimed",
                alertId=alert.id,
                reason="cooldown",
            )
            return False

        limit = await self.rate_limiter.check_and_increment(user.id)
        if not limit.allowed:
            await release_claim(session, item.id, alert.rule_type, claim_key)
            if limit is RateLimitDecision.ERROR:
                metrics.alerts_suppressed_total.labels(reason="rate_limit_error").inc()
                await audit.warn(
                    "ALERT_RATE_LIMIT_ERROR",
                    f"Rate limiter unavailable, suppressing alert {alert.id}",
                    alertId=alert.id,
                    userId=user.id,
                )
            else:
                metrics.alerts_suppressed_total.labels(reason=limit.value).inc()
                await audit.info(
                    "ALERT_RATE_LIMITED",
                    f"User {user.id} over alert rate limit ({limit.value})",
                    alertId=alert.id,
                    userId=user.id,
                    decision=limit.value,
                )
            return False

        delay_minutes = tier_delay_minutes(user.tier)
        if delay_minutes > 0:
            notify_id = notify_job_id(alert.id, claim_key)
            await audit.info(
                "ALERT_NOTIFY",
                f"Alert {alert.id} for user {user.id} queued for delivery in {delay_minutes}m: {decision.reason}",
                alertId=alert.id,
                userId=user.id,
                reason=decision.reason,
                mode="delayed",
                jobId=notify_id,
            )
            await session.commit()
            await self.queues.enqueue(
                NOTIFY_QUEUE,
                notify_id,
                DelayedNotificationJob(
                    alert_id=alert.id,
                    watchlist_item_id=item.id,
                    user_id=user.id,
                    product_id=job.product_id,
                    retailer_id=job.retailer_id,
                    rule_type=alert.rule_type,
                    claim_key=claim_key,
                    old_price=job.old_price,
                    new_price=job.new_price,
                    execution_id=job.execution_id,
                ),
                delay_seconds=delay_minutes * 60,
            )
            # The cooldown starts when the notification is scheduled
            await commit_claim(session, item.id, alert.rule_type, claim_key, now)
            metrics.alerts_sent_total.labels(rule_type=alert.rule_type, tier=user.tier, mode="delayed").inc()
            return True

        await audit.info(
            "ALERT_NOTIFY",
            f"Alert triggered for user {user.id}: {decision.reason}",
            alertId=alert.id,
            userId=user.id,
            reason=decision.reason,
            mode="immediate",
        )
        await session.commit()
        ctx = await build_context(
            session, alert.rule_type, user, job.product_id, job.retailer_id, job.new_price, job.old_price
        )
        await self.email_sender.send(user.email, render_alert_email(ctx))
        await commit_claim(session, item.id, alert.rule_type, claim_key, now)
        metrics.alerts_sent_total.labels(rule_type=alert.rule_type, tier=user.tier, mode="immediate").inc()
        return True

    async def handle_delayed(self, job: DelayedNotificationJob):
        """
        Deliver a delayed notification after re-checking eligibility.

        The alert, the watchlist item and the user must all still have
        notifications enabled at delivery time.
        """
        async with self.session_factory() as session:
            alert = await session.get(Alert, job.alert_id)
            item = await session.get(WatchlistItem, job.watchlist_item_id)
            user = await session.get(User, job.user_id)

            reason = None
            if alert is None or not alert.enabled:
                reason = "alert_disabled"
            elif item is None or not item.notifications_enabled:
                reason = "watchlist_disabled"
            elif user is None or not user.notifications_enabled:
                reason = "user_disabled"

            audit = ExecutionLogger(session, job.execution_id) if job.execution_id else None
            if reason is not None:
                metrics.alerts_suppressed_total.labels(reason=reason).inc()
                logger.info(f"Delayed notification for alert {job.alert_id} dropped: {reason}")
                if audit:
                    await audit.info(
                        "ALERT_DELAYED_SKIPPED",
                        f"Delayed notification for alert {job.alert_id} dropped: {reason}",
                        alertId=job.alert_id,
                        reason=reason,
                    )
                    await session.commit()
                return

            if audit:
                await audit.info(
                    "ALERT_DELAYED_SEND",
                    f"Sending delayed notification for alert {job.alert_id}",
                    alertId=job.alert_id,
                    userId=job.user_id,
                )
                await session.commit()

            ctx = await build_context(
                session, job.rule_type, user, job.product_id, job.retailer_id, job.new_price, job.old_price
            )
            await self.email_sender.send(user.email, render_alert_email(ctx))


async def build_context(
    session: AsyncSession,
    rule_type: str,
    user: User,
    product_id: str,
    retailer_id: int,
    new_price,
    old_price=None,
) -> AlertContext:
    product = await session.get(Product, product_id)
    retailer = await session.get(Retailer, retailer_id)
    listing_url = await session.scalar(
        select(Price.url)
        .where(and_(Price.product_id == product_id, Price.retailer_id == retailer_id))
        .order_by(Price.id.desc())
        .limit(1)
    )
    return AlertContext(
        rule_type=rule_type,
        user_name=user.name,
        product_id=product_id,
        product_name=product.name if product else product_id,
        current_price=new_price,
        previous_price=old_price,
        retailer_name=retailer.name if retailer else None,
        retailer_url=listing_url,
        image_url=product.image_url if product else None,
    )
