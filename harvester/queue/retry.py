"""Per-queue retry and backoff policy."""

from dataclasses import dataclass
from typing import Optional

from harvester.config import settings
from harvester.errors import PermanentJobError
from harvester.queue.jobs import FETCH_QUEUE


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap.

    Attempt numbers are 1-based: after the first failure ``attempt`` is 1.
    """

    max_attempts: int = 3
    backoff_seconds: float = 5.0
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 300.0

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        if isinstance(exc, PermanentJobError):
            return False
        return attempt < self.max_attempts

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        delay = self.backoff_seconds * (self.backoff_factor ** max(0, attempt - 1))
        # An upstream Retry-After stretches the wait, never past the cap
        retry_after = getattr(exc, "retry_after", None)
        if isinstance(retry_after, (int, float)):
            delay = max(delay, retry_after)
        return min(delay, self.max_backoff_seconds)


def policy_for(queue_name: str) -> RetryPolicy:
    """Build the configured policy for a queue."""
    if queue_name == FETCH_QUEUE:
        return RetryPolicy(
            max_attempts=settings.fetch_job_max_attempts,
            backoff_seconds=settings.fetch_job_backoff_seconds,
            backoff_factor=settings.job_backoff_factor,
            max_backoff_seconds=settings.job_max_backoff_seconds,
        )
    return RetryPolicy(
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_backoff_seconds,
        backoff_factor=settings.job_backoff_factor,
        max_backoff_seconds=settings.job_max_backoff_seconds,
    )
