"""Queue interface shared by the Redis queue and test doubles."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from harvester import metrics
from harvester.queue.jobs import QUEUE_NAMES, JobPayload

logger = logging.getLogger(__name__)


@dataclass
class QueuedJob:
    """A job leased from a queue."""

    id: str
    queue: str
    payload: dict[str, Any]
    attempts: int = 0  # Failed attempts so far
    last_error: Optional[str] = field(default=None, repr=False)


class JobQueue(ABC):
    """Durable at-least-once queue with job identity de-duplication."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def add(self, job_id: str, payload: dict[str, Any], delay_seconds: float = 0) -> bool:
        """
        Add a job unless one with the same identity is in flight or retained.

        Returns:
            True if added, False if rejected as a duplicate
        """
        pass

    @abstractmethod
    async def reserve(self) -> Optional[QueuedJob]:
        """Lease the next ready job, or None if nothing is ready."""
        pass

    @abstractmethod
    async def complete(self, job: QueuedJob) -> None:
        pass

    @abstractmethod
    async def retry(self, job: QueuedJob, delay_seconds: float, error: str) -> None:
        """Return a failed job to the queue after a delay."""
        pass

    @abstractmethod
    async def fail(self, job: QueuedJob, error: str) -> None:
        """Move a job to the failed set; its identity becomes free again."""
        pass

    @abstractmethod
    async def in_flight(self, job_id: str) -> bool:
        """Whether a job with this identity is waiting, delayed or active."""
        pass

    async def recover_stalled(self) -> int:
        """Re-queue jobs whose lease expired. Returns the number recovered."""
        return 0

    async def close(self) -> None:
        pass


class Queues:
    """Named queues for every pipeline stage."""

    def __init__(self, factory: Callable[[str], JobQueue], names: tuple[str, ...] = QUEUE_NAMES):
        self._queues = {name: factory(name) for name in names}

    def __getitem__(self, name: str) -> JobQueue:
        return self._queues[name]

    def __iter__(self):
        return iter(self._queues.values())

    async def enqueue(
        self,
        queue_name: str,
        job_id: str,
        job: JobPayload,
        delay_seconds: float = 0,
    ) -> bool:
        """Serialize and enqueue a job payload."""
        added = await self._queues[queue_name].add(job_id, job.to_wire(), delay_seconds)
        metrics.record_enqueue(queue_name, added)
        if added:
            logger.debug(f"Enqueued {job_id} on {queue_name} (delay={delay_seconds}s)")
        else:
            logger.info(f"Job {job_id} already in flight on {queue_name}; not enqueued")
        return added

    async def close(self) -> None:
        for queue in self._queues.values():
            await queue.close()
