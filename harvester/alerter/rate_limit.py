"""Per-user alert rate limiting over two rolling windows."""

import logging
import time
import uuid
from enum import Enum
from typing import Optional

import redis.asyncio as redis

from harvester import metrics
from harvester.config import settings

logger = logging.getLogger(__name__)

# KEYS: short window zset, long window zset
# ARGV: now, max_short, max_long, member, short_window_seconds, long_window_seconds
# Returns 0 allowed, 1 limited by the short (6h) window, 2 limited by the long (24h) window.
# Nothing is recorded unless the send is allowed.
RATE_LIMIT_SCRIPT = """
local now = tonumber(ARGV[1])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - tonumber(ARGV[5]))
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now - tonumber(ARGV[6]))
if redis.call('ZCARD', KEYS[1]) >= tonumber(ARGV[2]) then
    return 1
end
if redis.call('ZCARD', KEYS[2]) >= tonumber(ARGV[3]) then
    return 2
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('ZADD', KEYS[2], now, ARGV[4])
redis.call('EXPIRE', KEYS[1], ARGV[5])
redis.call('EXPIRE', KEYS[2], ARGV[6])
return 0
"""


class RateLimitDecision(str, Enum):
    ALLOWED = "allowed"
    LIMITED_6H = "limited_6h"
    LIMITED_24H = "limited_24h"
    ERROR = "error"

    @property
    def allowed(self) -> bool:
        return self is RateLimitDecision.ALLOWED


_RESULTS = {
    0: RateLimitDecision.ALLOWED,
    1: RateLimitDecision.LIMITED_6H,
    2: RateLimitDecision.LIMITED_24H,
}


class RateLimiter:
    """
    Atomic check-and-increment of a user's alert budget.

    Both windows are checked and recorded in one Lua script so concurrent
    alert workers can never overshoot the caps. Any store error fails closed.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "harvester:ratelimit",
        max_6h: Optional[int] = None,
        max_24h: Optional[int] = None,
        short_window_seconds: Optional[int] = None,
        long_window_seconds: Optional[int] = None,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.max_6h = max_6h if max_6h is not None else settings.rate_limit_6h_max
        self.max_24h = max_24h if max_24h is not None else settings.rate_limit_24h_max
        self.short_window = int(short_window_seconds or settings.rate_limit_short_window_seconds)
        self.long_window = int(long_window_seconds or settings.rate_limit_long_window_seconds)

    def _keys(self, user_id: int) -> tuple[str, str]:
        return f"{self.prefix}:{user_id}:6h", f"{self.prefix}:{user_id}:24h"

    async def check_and_increment(self, user_id: int, now: Optional[float] = None) -> RateLimitDecision:
        key_6h, key_24h = self._keys(user_id)
        try:
            result = await self.redis.eval(
                RATE_LIMIT_SCRIPT,
                2,
                key_6h,
                key_24h,
                now if now is not None else time.time(),
                self.max_6h,
                self.max_24h,
                uuid.uuid4().hex,
                self.short_window,
                self.long_window,
            )
            decision = _RESULTS.get(int(result), RateLimitDecision.ERROR)
        except Exception as e:
            logger.error(f"Rate limit check failed for user {user_id}, suppressing alert: {e}")
            decision = RateLimitDecision.ERROR

        metrics.rate_limit_decisions_total.labels(decision=decision.value).inc()
        return decision
