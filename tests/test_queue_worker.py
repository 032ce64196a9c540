"""Tests for stage workers, retry policies and queue identities."""

import asyncio

import pytest

from harvester.config import settings
from harvester.errors import PermanentJobError
from harvester.ingest.http_client import RateLimitedError
from harvester.queue.jobs import EXTRACT_QUEUE, FETCH_QUEUE, FetchJob, alert_job_id, fetch_job_id
from harvester.queue.retry import RetryPolicy, policy_for
from harvester.queue.worker import StageWorker

POLICY = RetryPolicy(max_attempts=3, backoff_seconds=5, backoff_factor=2, max_backoff_seconds=12)


def test_retry_policy_backoff():
    assert POLICY.delay_for(1) == 5
    assert POLICY.delay_for(2) == 10
    assert POLICY.delay_for(3) == 12


def test_retry_policy_honors_retry_after():
    assert POLICY.delay_for(1, RateLimitedError(retry_after=9)) == 9
    assert POLICY.delay_for(1, RateLimitedError(retry_after=86400)) == 12
    assert POLICY.delay_for(2, RateLimitedError(retry_after=None)) == 10


def test_retry_policy_attempts():
    assert POLICY.should_retry(1, RuntimeError())
    assert POLICY.should_retry(2, RuntimeError())
    assert not POLICY.should_retry(3, RuntimeError())
    assert not POLICY.should_retry(1, PermanentJobError())


def test_policy_for_fetch_queue():
    fetch = policy_for(FETCH_QUEUE)
    other = policy_for(EXTRACT_QUEUE)

    assert fetch.max_attempts == settings.fetch_job_max_attempts
    assert fetch.backoff_seconds == settings.fetch_job_backoff_seconds
    assert other.backoff_seconds == settings.job_backoff_seconds


def test_job_identities():
    assert fetch_job_id(7) == "fetch_7"
    assert alert_job_id(3, "fed9115", 2) == "alert_3_fed9115_2"


def test_job_payload_wire_format():
    job = FetchJob(source_id=1, execution_id=2)

    assert job.to_wire() == {"sourceId": 1, "executionId": 2}
    assert FetchJob.model_validate({"sourceId": 1, "executionId": 2}) == job


@pytest.mark.asyncio
async def test_duplicate_identity_is_rejected(queues):
    assert await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=1))
    assert not await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=2))


def make_worker(queue, handler, hook=None) -> StageWorker:
    return StageWorker(
        stage="fetch",
        queue=queue,
        job_model=FetchJob,
        handler=handler,
        policy=POLICY,
        on_permanent_failure=hook,
        poll_interval=0.01,
    )


@pytest.mark.asyncio
async def test_successful_job_is_completed(queues):
    queue = queues[FETCH_QUEUE]
    seen = []

    async def handler(job):
        seen.append(job)

    await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=9))

    assert await make_worker(queue, handler).process_next()
    assert seen == [FetchJob(source_id=1, execution_id=9)]
    assert not await queue.in_flight("fetch_1")
    assert not await make_worker(queue, handler).process_next()


@pytest.mark.asyncio
async def test_transient_failure_is_retried_then_failed(queues):
    queue = queues[FETCH_QUEUE]
    failures = []

    async def handler(job):
        raise RuntimeError("upstream timeout")

    async def hook(job, exc):
        failures.append((job.execution_id, str(exc)))

    await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=9))
    worker = make_worker(queue, handler, hook)

    await worker.process_next()
    assert queue.jobs["fetch_1"].attempts == 1
    assert queue.delays["fetch_1"] == 5
    assert failures == []

    await worker.process_next()
    await worker.process_next()

    assert "fetch_1" in queue.failed
    assert failures == [(9, "upstream timeout")]


@pytest.mark.asyncio
async def test_permanent_error_skips_retries(queues):
    queue = queues[FETCH_QUEUE]
    failures = []

    async def handler(job):
        raise PermanentJobError("source gone")

    async def hook(job, exc):
        failures.append(exc)

    await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=9))

    await make_worker(queue, handler, hook).process_next()

    assert "fetch_1" in queue.failed
    assert len(failures) == 1


@pytest.mark.asyncio
async def test_failing_hook_does_not_break_worker(queues):
    queue = queues[FETCH_QUEUE]

    async def handler(job):
        raise PermanentJobError("source gone")

    async def hook(job, exc):
        raise RuntimeError("database down")

    await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=9))

    assert await make_worker(queue, handler, hook).process_next()
    assert "fetch_1" in queue.failed


@pytest.mark.asyncio
async def test_invalid_payload_is_failed_without_handler(queues):
    queue = queues[FETCH_QUEUE]
    called = []

    async def handler(job):
        called.append(job)

    await queue.add("fetch_1", {"sourceId": "not-a-number"})

    await make_worker(queue, handler).process_next()

    assert called == []
    assert queue.failed["fetch_1"].startswith("Invalid payload")


@pytest.mark.asyncio
async def test_worker_consumes_until_stopped(queues):
    queue = queues[FETCH_QUEUE]
    done = asyncio.Event()

    async def handler(job):
        done.set()

    worker = make_worker(queue, handler)
    await worker.start()
    await queues.enqueue(FETCH_QUEUE, "fetch_1", FetchJob(source_id=1, execution_id=9))

    await asyncio.wait_for(done.wait(), timeout=2)
    await worker.stop()

    assert not await queue.in_flight("fetch_1")
