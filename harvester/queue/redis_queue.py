"""Redis-backed job queue with atomic identity de-duplication."""

import json
import logging
import time
from typing import Any, Optional

import redis.asyncio as redis

from harvester.config import settings
from harvester.queue.base import JobQueue, QueuedJob
from harvester.queue.jobs import FETCH_QUEUE

logger = logging.getLogger(__name__)

# KEYS: jobs, wait, delayed, completed
# ARGV: job_id, data, now, ready_at
# Returns 1 if added, 0 if the identity is in flight or retained
ADD_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[4], '-inf', ARGV[3])
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then
    return 0
end
if redis.call('ZSCORE', KEYS[4], ARGV[1]) then
    return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
if tonumber(ARGV[4]) > tonumber(ARGV[3]) then
    redis.call('ZADD', KEYS[3], ARGV[4], ARGV[1])
else
    redis.call('RPUSH', KEYS[2], ARGV[1])
end
return 1
"""

# KEYS: jobs, wait, delayed, active
# ARGV: now, lease_until
# Returns {job_id, data} or false
RESERVE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[1], 'LIMIT', 0, 100)
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[3], id)
    redis.call('RPUSH', KEYS[2], id)
end
while true do
    local id = redis.call('LPOP', KEYS[2])
    if not id then
        return false
    end
    local data = redis.call('HGET', KEYS[1], id)
    if data then
        redis.call('ZADD', KEYS[4], ARGV[2], id)
        return {id, data}
    end
end
"""

# KEYS: jobs, active, completed
# ARGV: job_id, retain_until (0 = no retention)
COMPLETE_SCRIPT = """
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[1], ARGV[1])
if tonumber(ARGV[2]) > 0 then
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
end
return 1
"""

# KEYS: jobs, active, delayed
# ARGV: job_id, data, ready_at
RETRY_SCRIPT = """
if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
return 1
"""

# KEYS: jobs, active, failed, failed_expiry
# ARGV: job_id, record, now, expire_at
FAIL_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[4], '-inf', ARGV[3])
for _, id in ipairs(expired) do
    redis.call('HDEL', KEYS[3], id)
end
redis.call('ZREMRANGEBYSCORE', KEYS[4], '-inf', ARGV[3])
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[3], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
return 1
"""

# KEYS: active, wait
# ARGV: now
RECOVER_SCRIPT = """
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(stalled) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('RPUSH', KEYS[2], id)
end
return #stalled
"""


def retention_for(queue_name: str) -> int:
    """Seconds a completed identity keeps rejecting duplicates.

    Fetch identities are released on completion so the next scheduled
    run of the same source can be enqueued.
    """
    if queue_name == FETCH_QUEUE:
        return 0
    return settings.completed_retention_seconds


class RedisJobQueue(JobQueue):
    """
    One named queue stored under ``{prefix}:{name}:*``.

    Keys:
    - jobs: hash of job_id -> {"payload", "attempts"} for every in-flight job
    - wait: list of ready job ids
    - delayed: zset of job ids scored by ready time
    - active: zset of leased job ids scored by lease expiry
    - completed: zset of retained identities scored by expiry
    - failed: hash of job_id -> failure record
    - failed_expiry: zset of failed job ids scored by expiry, trimmed on each failure
    """

    def __init__(
        self,
        name: str,
        redis_client: redis.Redis,
        prefix: Optional[str] = None,
        lease_seconds: Optional[int] = None,
        retention_seconds: Optional[int] = None,
        failed_retention_seconds: Optional[int] = None,
    ):
        super().__init__(name)
        self.redis = redis_client
        base = f"{prefix or settings.queue_prefix}:{name}"
        self.jobs_key = f"{base}:jobs"
        self.wait_key = f"{base}:wait"
        self.delayed_key = f"{base}:delayed"
        self.active_key = f"{base}:active"
        self.completed_key = f"{base}:completed"
        self.failed_key = f"{base}:failed"
        self.failed_expiry_key = f"{base}:failed_expiry"
        self.lease_seconds = lease_seconds or settings.job_lease_seconds
        self.retention_seconds = (
            retention_for(name) if retention_seconds is None else retention_seconds
        )
        self.failed_retention_seconds = (
            settings.failed_retention_seconds
            if failed_retention_seconds is None
            else failed_retention_seconds
        )

    async def add(self, job_id: str, payload: dict[str, Any], delay_seconds: float = 0) -> bool:
        now = time.time()
        ready_at = now + delay_seconds if delay_seconds > 0 else 0
        data = json.dumps({"payload": payload, "attempts": 0})
        added = await self.redis.eval(
            ADD_SCRIPT,
            4,
            self.jobs_key,
            self.wait_key,
            self.delayed_key,
            self.completed_key,
            job_id,
            data,
            now,
            ready_at,
        )
        return bool(added)

    async def reserve(self) -> Optional[QueuedJob]:
        now = time.time()
        result = await self.redis.eval(
            RESERVE_SCRIPT,
            4,
            self.jobs_key,
            self.wait_key,
            self.delayed_key,
            self.active_key,
            now,
            now + self.lease_seconds,
        )
        if not result:
            return None

        job_id, raw = result
        if isinstance(job_id, bytes):
            job_id = job_id.decode()
        data = json.loads(raw)
        return QueuedJob(
            id=job_id,
            queue=self.name,
            payload=data["payload"],
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
        )

    async def complete(self, job: QueuedJob) -> None:
        retain_until = time.time() + self.retention_seconds if self.retention_seconds > 0 else 0
        await self.redis.eval(
            COMPLETE_SCRIPT,
            3,
            self.jobs_key,
            self.active_key,
            self.completed_key,
            job.id,
            retain_until,
        )

    async def retry(self, job: QueuedJob, delay_seconds: float, error: str) -> None:
        data = json.dumps(
            {"payload": job.payload, "attempts": job.attempts + 1, "last_error": error}
        )
        moved = await self.redis.eval(
            RETRY_SCRIPT,
            3,
            self.jobs_key,
            self.active_key,
            self.delayed_key,
            job.id,
            data,
            time.time() + delay_seconds,
        )
        if not moved:
            logger.warning(f"{self.name}: job {job.id} lost its lease before retry")

    async def fail(self, job: QueuedJob, error: str) -> None:
        now = time.time()
        record = json.dumps(
            {
                "payload": job.payload,
                "attempts": job.attempts + 1,
                "error": error,
                "failed_at": now,
            }
        )
        await self.redis.eval(
            FAIL_SCRIPT,
            4,
            self.jobs_key,
            self.active_key,
            self.failed_key,
            self.failed_expiry_key,
            job.id,
            record,
            now,
            now + self.failed_retention_seconds,
        )

    async def in_flight(self, job_id: str) -> bool:
        return bool(await self.redis.hexists(self.jobs_key, job_id))

    async def recover_stalled(self) -> int:
        recovered = await self.redis.eval(
            RECOVER_SCRIPT,
            2,
            self.active_key,
            self.wait_key,
            time.time(),
        )
        if recovered:
            logger.warning(f"{self.name}: recovered {recovered} stalled jobs")
        return int(recovered or 0)

    async def counts(self) -> dict[str, int]:
        """Queue depth by state."""
        return {
            "waiting": await self.redis.llen(self.wait_key),
            "delayed": await self.redis.zcard(self.delayed_key),
            "active": await self.redis.zcard(self.active_key),
            "failed": await self.redis.zcount(self.failed_expiry_key, time.time(), "+inf"),
        }
