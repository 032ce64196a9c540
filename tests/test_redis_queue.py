"""Tests for the Redis-backed job queue."""

import asyncio
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as redis

from harvester.config import settings
from harvester.queue.jobs import EXTRACT_QUEUE, FETCH_QUEUE
from harvester.queue.redis_queue import RedisJobQueue, retention_for


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture
async def redis_client():
    if not await _redis_available():
        pytest.skip("Redis not available")
    client = redis.from_url(settings.redis_url, decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def prefix(redis_client):
    value = f"test:{uuid.uuid4().hex}"
    yield value
    async for key in redis_client.scan_iter(f"{value}:*"):
        await redis_client.delete(key)


def test_fetch_identities_are_not_retained():
    assert retention_for(FETCH_QUEUE) == 0
    assert retention_for(EXTRACT_QUEUE) == settings.completed_retention_seconds


@pytest.mark.asyncio
async def test_add_reserve_complete(redis_client, prefix):
    queue = RedisJobQueue(EXTRACT_QUEUE, redis_client, prefix=prefix)

    assert await queue.add("extract_1", {"executionId": 1})
    assert not await queue.add("extract_1", {"executionId": 1})
    assert await queue.in_flight("extract_1")

    job = await queue.reserve()
    assert job.id == "extract_1"
    assert job.payload == {"executionId": 1}
    assert job.attempts == 0
    # Active jobs still hold their identity
    assert not await queue.add("extract_1", {"executionId": 1})

    await queue.complete(job)
    assert not await queue.in_flight("extract_1")
    # Retained after completion
    assert not await queue.add("extract_1", {"executionId": 1})


@pytest.mark.asyncio
async def test_fetch_identity_free_after_completion(redis_client, prefix):
    queue = RedisJobQueue(FETCH_QUEUE, redis_client, prefix=prefix)

    await queue.add("fetch_1", {"sourceId": 1, "executionId": 1})
    await queue.complete(await queue.reserve())

    assert await queue.add("fetch_1", {"sourceId": 1, "executionId": 2})


@pytest.mark.asyncio
async def test_delayed_job_is_not_ready(redis_client, prefix):
    queue = RedisJobQueue(EXTRACT_QUEUE, redis_client, prefix=prefix)

    await queue.add("extract_1", {"executionId": 1}, delay_seconds=60)

    assert await queue.reserve() is None
    assert await queue.in_flight("extract_1")
    assert (await queue.counts())["delayed"] == 1


@pytest.mark.asyncio
async def test_retry_and_fail(redis_client, prefix):
    queue = RedisJobQueue(EXTRACT_QUEUE, redis_client, prefix=prefix)
    await queue.add("extract_1", {"executionId": 1})

    job = await queue.reserve()
    await queue.retry(job, 0, "RuntimeError: boom")
    retried = await queue.reserve()

    assert retried.id == "extract_1"
    assert retried.attempts == 1
    assert retried.last_error == "RuntimeError: boom"

    await queue.fail(retried, "RuntimeError: boom")
    assert (await queue.counts())["failed"] == 1
    assert not await queue.in_flight("extract_1")
    assert await queue.add("extract_1", {"executionId": 1})


@pytest.mark.asyncio
async def test_recover_stalled(redis_client, prefix):
    queue = RedisJobQueue(EXTRACT_QUEUE, redis_client, prefix=prefix, lease_seconds=1)
    await queue.add("extract_1", {"executionId": 1})
    await queue.reserve()

    await asyncio.sleep(1.2)

    assert await queue.recover_stalled() == 1
    job = await queue.reserve()
    assert job.id == "extract_1"


@pytest.mark.asyncio
async def test_expired_failures_are_trimmed(redis_client, prefix):
    queue = RedisJobQueue(EXTRACT_QUEUE, redis_client, prefix=prefix, failed_retention_seconds=0)
    for job_id in ("extract_1", "extract_2"):
        await queue.add(job_id, {"executionId": 1})
        await queue.fail(await queue.reserve(), "RuntimeError: boom")

    # Only the latest record survives its own failure call
    assert await redis_client.hkeys(queue.failed_key) == ["extract_2"]
    assert await redis_client.zrange(queue.failed_expiry_key, 0, -1) == ["extract_2"]
    assert (await queue.counts())["failed"] == 0


def test_failed_retention_defaults_to_settings():
    queue = RedisJobQueue(EXTRACT_QUEUE, redis.Redis())

    assert queue.failed_retention_seconds == settings.failed_retention_seconds
