"""Tests for the per-user alert rate limiter."""

import time
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as redis

from harvester.alerter.rate_limit import RateLimitDecision, RateLimiter
from harvester.config import settings

HOUR = 3600


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture
async def redis_client_prefix():
    if not await _redis_available():
        pytest.skip("Redis not available")
    client = redis.from_url(settings.redis_url, decode_responses=True)
    prefix = f"test:ratelimit:{uuid.uuid4().hex}"
    yield client, prefix
    async for key in client.scan_iter(f"{prefix}:*"):
        await client.delete(key)
    await client.aclose()


@pytest_asyncio.fixture
async def limiter(redis_client_prefix):
    client, prefix = redis_client_prefix
    return RateLimiter(client, prefix=prefix, max_6h=1, max_24h=3)


class RecordingRedis:
    def __init__(self):
        self.calls = []

    async def eval(self, *args):
        self.calls.append(args)
        return 0


class BrokenRedis:
    async def eval(self, *args):
        raise ConnectionError("connection refused")


@pytest.mark.asyncio
async def test_one_alert_per_six_hours(limiter):
    start = time.time()

    assert await limiter.check_and_increment(1, now=start) is RateLimitDecision.ALLOWED
    assert await limiter.check_and_increment(1, now=start + 60) is RateLimitDecision.LIMITED_6H
    assert await limiter.check_and_increment(2, now=start + 60) is RateLimitDecision.ALLOWED


@pytest.mark.asyncio
async def test_three_alerts_per_day(limiter):
    start = time.time()

    for offset in (0, 7, 14):
        assert await limiter.check_and_increment(1, now=start + offset * HOUR) is RateLimitDecision.ALLOWED

    assert await limiter.check_and_increment(1, now=start + 21 * HOUR) is RateLimitDecision.LIMITED_24H
    # The first send has left the 24h window
    assert await limiter.check_and_increment(1, now=start + 25 * HOUR) is RateLimitDecision.ALLOWED


@pytest.mark.asyncio
async def test_denied_attempts_are_not_counted(limiter):
    start = time.time()

    await limiter.check_and_increment(1, now=start)
    for minute in range(1, 5):
        await limiter.check_and_increment(1, now=start + minute * 60)

    assert await limiter.check_and_increment(1, now=start + 7 * HOUR) is RateLimitDecision.ALLOWED


@pytest.mark.asyncio
async def test_store_error_fails_closed():
    limiter = RateLimiter(BrokenRedis())

    decision = await limiter.check_and_increment(1)

    assert decision is RateLimitDecision.ERROR
    assert not decision.allowed


@pytest.mark.asyncio
async def test_window_lengths_come_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_short_window_seconds", 600)
    monkeypatch.setattr(settings, "rate_limit_long_window_seconds", 3600)
    client = RecordingRedis()

    await RateLimiter(client).check_and_increment(1, now=1000.0)

    [args] = client.calls
    assert args[-2:] == (600, 3600)


@pytest.mark.asyncio
async def test_short_window_override(redis_client_prefix):
    client, prefix = redis_client_prefix
    limiter = RateLimiter(client, prefix=prefix, max_6h=1, max_24h=10, short_window_seconds=60)
    start = time.time()

    assert await limiter.check_and_increment(1, now=start) is RateLimitDecision.ALLOWED
    assert await limiter.check_and_increment(1, now=start + 30) is RateLimitDecision.LIMITED_6H
    assert await limiter.check_and_increment(1, now=start + 61) is RateLimitDecision.ALLOWED
