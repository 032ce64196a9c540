"""Tests for alert evaluation, cooldown claims, rate limiting and tiered delivery."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from harvester.alerter.alerter import Alerter
from harvester.alerter.rate_limit import RateLimitDecision
from harvester.alerter.visibility import is_product_visible
from harvester.db.models import (
    Alert,
    AlertRuleType,
    Merchant,
    Price,
    Product,
    Retailer,
    SubscriptionStatus,
    User,
    UserTier,
    WatchlistItem,
)
from harvester.queue.jobs import NOTIFY_QUEUE, AlertJob, DelayedNotificationJob

NOW = datetime(2026, 3, 14, 12, 0, 0)
PRODUCT_ID = "fed9115"


class StubLimiter:
    def __init__(self, *decisions: RateLimitDecision):
        self.decisions = list(decisions)
        self.calls = []

    async def check_and_increment(self, user_id, now=None):
        self.calls.append(user_id)
        return self.decisions.pop(0) if self.decisions else RateLimitDecision.ALLOWED


class StubEmail:
    def __init__(self, error: Exception = None):
        self.sent = []
        self.error = error

    async def send(self, to, message):
        if self.error:
            raise self.error
        self.sent.append((to, message))
        return True


@pytest.fixture
def seed_watch(session_factory, retailer):
    """Product priced at the retailer, plus a user watching it with one alert."""

    async def _seed(
        tier: str = UserTier.PREMIUM.value,
        rule_type: str = AlertRuleType.PRICE_DROP.value,
        merchant_status: str = None,
        user_notifications: bool = True,
        **item_fields,
    ):
        async with session_factory() as session:
            if merchant_status:
                merchant = Merchant(business_name="Dealer Co", subscription_status=merchant_status)
                session.add(merchant)
                await session.flush()
                (await session.get(Retailer, retailer.id)).merchant_id = merchant.id

            session.add(Product(id=PRODUCT_ID, name="Federal 9mm 115gr FMJ"))
            session.add(
                Price(
                    product_id=PRODUCT_ID,
                    retailer_id=retailer.id,
                    price=Decimal("24.99"),
                    url="https://ammodepot.example/p/fed9115",
                    in_stock=True,
                )
            )
            user = User(
                email="shooter@example.com",
                name="Sam",
                tier=tier,
                notifications_enabled=user_notifications,
            )
            session.add(user)
            await session.flush()

            item = WatchlistItem(user_id=user.id, product_id=PRODUCT_ID, **item_fields)
            session.add(item)
            await session.flush()

            alert = Alert(user_id=user.id, product_id=PRODUCT_ID, watchlist_item_id=item.id, rule_type=rule_type)
            session.add(alert)
            await session.commit()
            return alert, item, user

    return _seed


@pytest.fixture
def load_item(session_factory):
    async def _load(item_id: int) -> WatchlistItem:
        async with session_factory() as session:
            return await session.get(WatchlistItem, item_id)

    return _load


def price_drop(execution_id, retailer_id, old="29.99", new="24.99") -> AlertJob:
    return AlertJob(
        execution_id=execution_id,
        product_id=PRODUCT_ID,
        retailer_id=retailer_id,
        old_price=Decimal(old),
        new_price=Decimal(new),
        old_in_stock=True,
        new_in_stock=True,
    )


def make_alerter(session_factory, queues, limiter=None, email=None) -> Alerter:
    return Alerter(
        session_factory,
        queues,
        limiter or StubLimiter(),
        email or StubEmail(),
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_premium_price_drop_sends_immediately(
    session_factory, queues, source, make_execution, execution_logs, seed_watch, load_item
):
    alert, item, user = await seed_watch(tier=UserTier.PREMIUM.value)
    execution_id = await make_execution(source.id)
    email = StubEmail()

    await make_alerter(session_factory, queues, email=email).handle(price_drop(execution_id, source.retailer_id))

    [(to, message)] = email.sent
    assert to == "shooter@example.com"
    assert message.subject == "Price Drop Alert: Federal 9mm 115gr FMJ"
    assert "$24.99" in message.text
    assert "https://ammodepot.example/p/fed9115" in message.text

    stored = await load_item(item.id)
    assert stored.last_price_notified_at == NOW
    assert stored.price_claim_key is None

    logs = await execution_logs(execution_id)
    assert [log.event for log in logs] == ["ALERT_EVALUATE", "ALERT_NOTIFY", "ALERT_EVALUATE_OK"]
    assert logs[1].details["mode"] == "immediate"
    assert queues[NOTIFY_QUEUE].payloads() == []


@pytest.mark.asyncio
async def test_free_tier_is_delayed(session_factory, queues, source, make_execution, seed_watch, load_item):
    alert, item, user = await seed_watch(tier=UserTier.FREE.value)
    execution_id = await make_execution(source.id)
    email = StubEmail()

    await make_alerter(session_factory, queues, email=email).handle(price_drop(execution_id, source.retailer_id))

    assert email.sent == []
    notify = queues[NOTIFY_QUEUE]
    [payload] = notify.payloads()
    job_id = f"notify_{alert.id}_{payload['claimKey']}"
    assert notify.delays[job_id] == 60 * 60
    assert payload["userId"] == user.id
    assert payload["ruleType"] == AlertRuleType.PRICE_DROP.value

    stored = await load_item(item.id)
    assert stored.last_price_notified_at == NOW


@pytest.mark.asyncio
async def test_delayed_notification_delivers_when_still_enabled(
    session_factory, queues, source, make_execution, execution_logs, seed_watch
):
    await seed_watch(tier=UserTier.FREE.value)
    execution_id = await make_execution(source.id)
    email = StubEmail()
    alerter = make_alerter(session_factory, queues, email=email)
    await alerter.handle(price_drop(execution_id, source.retailer_id))

    [payload] = queues[NOTIFY_QUEUE].payloads()
    await alerter.handle_delayed(DelayedNotificationJob.model_validate(payload))

    assert len(email.sent) == 1
    events = [log.event for log in await execution_logs(execution_id)]
    assert events[-1] == "ALERT_DELAYED_SEND"


@pytest.mark.asyncio
async def test_delayed_notification_dropped_when_alert_disabled(
    session_factory, queues, source, make_execution, execution_logs, seed_watch
):
    alert, item, user = await seed_watch(tier=UserTier.FREE.value)
    execution_id = await make_execution(source.id)
    async with session_factory() as session:
        (await session.get(Alert, alert.id)).enabled = False
        await session.commit()
    email = StubEmail()

    await make_alerter(session_factory, queues, email=email).handle_delayed(
        DelayedNotificationJob(
            alert_id=alert.id,
            watchlist_item_id=item.id,
            user_id=user.id,
            product_id=PRODUCT_ID,
            retailer_id=source.retailer_id,
            rule_type=AlertRuleType.PRICE_DROP.value,
            claim_key="abc123",
            old_price=Decimal("29.99"),
            new_price=Decimal("24.99"),
            execution_id=execution_id,
        )
    )

    assert email.sent == []
    [log] = await execution_logs(execution_id)
    assert log.event == "ALERT_DELAYED_SKIPPED"
    assert log.details["reason"] == "alert_disabled"


@pytest.mark.asyncio
async def test_suspended_dealer_hides_product(session_factory, queues, source, make_execution, execution_logs, seed_watch):
    await seed_watch(merchant_status=SubscriptionStatus.SUSPENDED.value)
    execution_id = await make_execution(source.id)
    limiter = StubLimiter()
    email = StubEmail()

    await make_alerter(session_factory, queues, limiter, email).handle(price_drop(execution_id, source.retailer_id))

    assert limiter.calls == []
    assert email.sent == []
    events = [log.event for log in await execution_logs(execution_id)]
    assert events == ["ALERT_EVALUATE", "ALERT_SKIPPED", "ALERT_EVALUATE_OK"]


@pytest.mark.asyncio
async def test_expired_dealer_remains_visible(session_factory, queues, source, make_execution, seed_watch):
    await seed_watch(merchant_status=SubscriptionStatus.EXPIRED.value)
    execution_id = await make_execution(source.id)
    email = StubEmail()

    async with session_factory() as session:
        assert await is_product_visible(session, PRODUCT_ID)

    await make_alerter(session_factory, queues, email=email).handle(price_drop(execution_id, source.retailer_id))

    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_rate_limited_alert_releases_claim(
    session_factory, queues, source, make_execution, execution_logs, seed_watch, load_item
):
    alert, item, user = await seed_watch()
    execution_id = await make_execution(source.id)
    email = StubEmail()

    await make_alerter(session_factory, queues, StubLimiter(RateLimitDecision.LIMITED_6H), email).handle(
        price_drop(execution_id, source.retailer_id)
    )

    assert email.sent == []
    stored = await load_item(item.id)
    assert stored.price_claim_key is None
    assert stored.last_price_notified_at is None

    limited = next(log for log in await execution_logs(execution_id) if log.event == "ALERT_RATE_LIMITED")
    assert limited.details["decision"] == "limited_6h"


@pytest.mark.asyncio
async def test_rate_limiter_error_fails_closed(
    session_factory, queues, source, make_execution, execution_logs, seed_watch
):
    await seed_watch()
    execution_id = await make_execution(source.id)
    email = StubEmail()

    await make_alerter(session_factory, queues, StubLimiter(RateLimitDecision.ERROR), email).handle(
        price_drop(execution_id, source.retailer_id)
    )

    assert email.sent == []
    logs = await execution_logs(execution_id)
    error = next(log for log in logs if log.event == "ALERT_RATE_LIMIT_ERROR")
    assert error.level == "WARN"


@pytest.mark.asyncio
async def test_second_delivery_is_suppressed_by_cooldown(
    session_factory, queues, source, make_execution, execution_logs, seed_watch
):
    await seed_watch()
    execution_id = await make_execution(source.id)
    email = StubEmail()
    alerter = make_alerter(session_factory, queues, email=email)

    await alerter.handle(price_drop(execution_id, source.retailer_id))
    await alerter.handle(price_drop(execution_id, source.retailer_id, old="24.99", new="19.99"))

    assert len(email.sent) == 1
    events = [log.event for log in await execution_logs(execution_id)]
    assert events.count("ALERT_SUPPRESSED") == 1


@pytest.mark.asyncio
async def test_fresh_claim_blocks_and_stale_claim_is_taken(
    session_factory, queues, source, make_execution, seed_watch, load_item
):
    alert, item, user = await seed_watch(
        price_claim_key="other-worker",
        price_claimed_at=NOW - timedelta(seconds=60),
    )
    execution_id = await make_execution(source.id)
    email = StubEmail()
    alerter = make_alerter(session_factory, queues, email=email)

    await alerter.handle(price_drop(execution_id, source.retailer_id))
    assert email.sent == []

    async with session_factory() as session:
        (await session.get(WatchlistItem, item.id)).price_claimed_at = NOW - timedelta(minutes=10)
        await session.commit()

    await alerter.handle(price_drop(execution_id, source.retailer_id))
    assert len(email.sent) == 1
    assert (await load_item(item.id)).price_claim_key is None


@pytest.mark.asyncio
async def test_drop_below_threshold_does_not_fire(session_factory, queues, source, make_execution, seed_watch):
    await seed_watch(min_drop_percent=Decimal("50"))
    execution_id = await make_execution(source.id)
    limiter = StubLimiter()

    await make_alerter(session_factory, queues, limiter).handle(price_drop(execution_id, source.retailer_id))

    assert limiter.calls == []


@pytest.mark.asyncio
async def test_back_in_stock_respects_item_cooldown(
    session_factory, queues, source, make_execution, seed_watch, load_item
):
    alert, item, user = await seed_watch(
        rule_type=AlertRuleType.BACK_IN_STOCK.value,
        stock_alert_cooldown_hours=12,
        last_stock_notified_at=NOW - timedelta(hours=2),
    )
    execution_id = await make_execution(source.id)
    email = StubEmail()
    alerter = make_alerter(session_factory, queues, email=email)
    job = AlertJob(
        execution_id=execution_id,
        product_id=PRODUCT_ID,
        retailer_id=source.retailer_id,
        old_price=Decimal("24.99"),
        new_price=Decimal("24.99"),
        old_in_stock=False,
        new_in_stock=True,
    )

    await alerter.handle(job)
    assert email.sent == []

    async with session_factory() as session:
        (await session.get(WatchlistItem, item.id)).last_stock_notified_at = NOW - timedelta(hours=13)
        await session.commit()

    await alerter.handle(job)
    [(_, message)] = email.sent
    assert message.subject == "Back in Stock: Federal 9mm 115gr FMJ"
    assert (await load_item(item.id)).last_stock_notified_at == NOW


@pytest.mark.asyncio
async def test_user_with_notifications_off_is_not_evaluated(session_factory, queues, source, make_execution, seed_watch):
    await seed_watch(user_notifications=False)
    execution_id = await make_execution(source.id)
    limiter = StubLimiter()

    await make_alerter(session_factory, queues, limiter).handle(price_drop(execution_id, source.retailer_id))

    assert limiter.calls == []


@pytest.mark.asyncio
async def test_evaluation_failure_is_audited(session_factory, queues, source, make_execution, execution_logs, seed_watch):
    await seed_watch()
    execution_id = await make_execution(source.id)
    alerter = make_alerter(session_factory, queues, email=StubEmail(error=RuntimeError("smtp down")))

    with pytest.raises(RuntimeError):
        await alerter.handle(price_drop(execution_id, source.retailer_id))

    events = [log.event for log in await execution_logs(execution_id)]
    assert events[-1] == "ALERT_EVALUATE_FAIL"
