"""Concurrent stage worker consuming one queue."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from harvester import metrics
from harvester.config import settings
from harvester.queue.base import JobQueue, QueuedJob
from harvester.queue.retry import RetryPolicy

logger = logging.getLogger(__name__)

Handler = Callable[[BaseModel], Awaitable[None]]
FailureHook = Callable[[BaseModel, BaseException], Awaitable[None]]


class StageWorker:
    """
    Runs ``concurrency`` consumers against one queue.

    Each job payload is validated into ``job_model`` and passed to the
    handler. Exceptions are retried per the policy; once attempts are
    exhausted (or the error is permanent) the job moves to the failed set
    and ``on_permanent_failure`` runs.
    """

    def __init__(
        self,
        stage: str,
        queue: JobQueue,
        job_model: type[BaseModel],
        handler: Handler,
        policy: RetryPolicy,
        concurrency: int = 1,
        on_permanent_failure: Optional[FailureHook] = None,
        poll_interval: Optional[float] = None,
    ):
        self.stage = stage
        self.queue = queue
        self.job_model = job_model
        self.handler = handler
        self.policy = policy
        self.concurrency = max(1, concurrency)
        self.on_permanent_failure = on_permanent_failure
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Spawn consumer tasks."""
        self._stopping.clear()
        for i in range(self.concurrency):
            self._tasks.append(
                asyncio.create_task(self._consume(), name=f"{self.stage}-worker-{i}")
            )
        logger.info(f"Started {self.concurrency} {self.stage} workers")

    async def stop(self):
        """Stop consumers after their current job."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Stopped {self.stage} workers")

    async def _consume(self):
        while not self._stopping.is_set():
            try:
                processed = await self.process_next()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Queue backend errors; keep the consumer alive
                logger.exception(f"{self.stage}: error polling queue")
                processed = False

            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def process_next(self) -> bool:
        """
        Reserve and process one job.

        Returns:
            True if a job was processed (successfully or not)
        """
        job = await self.queue.reserve()
        if job is None:
            return False
        await self.process(job)
        return True

    async def process(self, job: QueuedJob):
        """Run the handler for one leased job and settle it on the queue."""
        start = time.monotonic()
        try:
            payload = self.job_model.model_validate(job.payload)
        except ValidationError as e:
            logger.error(f"{self.stage}: invalid payload for {job.id}: {e}")
            await self.queue.fail(job, f"Invalid payload: {e}")
            metrics.record_stage_job(self.stage, "invalid")
            return

        try:
            await self.handler(payload)
        except Exception as e:
            attempt = job.attempts + 1
            error = f"{type(e).__name__}: {e}"
            if self.policy.should_retry(attempt, e):
                delay = self.policy.delay_for(attempt, e)
                logger.warning(
                    f"{self.stage}: job {job.id} failed (attempt {attempt}/"
                    f"{self.policy.max_attempts}), retrying in {delay:.0f}s: {error}"
                )
                await self.queue.retry(job, delay, error)
                metrics.record_stage_job(self.stage, "retry", time.monotonic() - start)
                return

            logger.error(f"{self.stage}: job {job.id} failed permanently: {error}")
            await self.queue.fail(job, error)
            metrics.record_stage_job(self.stage, "failed", time.monotonic() - start)
            if self.on_permanent_failure is not None:
                try:
                    await self.on_permanent_failure(payload, e)
                except Exception:
                    logger.exception(f"{self.stage}: permanent-failure hook raised for {job.id}")
            return

        await self.queue.complete(job)
        metrics.record_stage_job(self.stage, "success", time.monotonic() - start)
