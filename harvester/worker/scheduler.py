"""Source scheduling and APScheduler job definitions."""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from harvester import metrics
from harvester.config import settings
from harvester.db.audit import ExecutionLogger, fail_execution
from harvester.db.models import Execution, ExecutionStatus, Source, utcnow
from harvester.errors import SourceNotFoundError
from harvester.queue.base import Queues
from harvester.queue.jobs import FETCH_QUEUE, FetchJob, fetch_job_id

logger = logging.getLogger(__name__)


class SourceScheduler:
    """Creates executions for due sources and enqueues their fetch jobs."""

    def __init__(self, session_factory: async_sessionmaker, queues: Queues):
        self.session_factory = session_factory
        self.queues = queues

    async def schedule_due_sources(self, now: Optional[datetime] = None) -> list[int]:
        """
        Enqueue one fetch per enabled source whose next run is due.

        Returns:
            IDs of the executions created
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            source_ids = (
                await session.scalars(
                    select(Source.id)
                    .where(
                        Source.enabled.is_(True),
                        or_(Source.next_run_at.is_(None), Source.next_run_at <= now),
                    )
                    .order_by(Source.id)
                )
            ).all()

        execution_ids = []
        for source_id in source_ids:
            try:
                execution_id = await self.schedule_source(source_id, now)
            except Exception as e:
                # One bad source must not stop the tick
                logger.error(f"Failed to schedule source {source_id}: {e}", exc_info=True)
                continue
            if execution_id is not None:
                execution_ids.append(execution_id)

        if source_ids:
            logger.info(f"Scheduled {len(execution_ids)}/{len(source_ids)} due sources")
        return execution_ids

    async def trigger_source(self, source_id: int) -> Optional[int]:
        """Run one source now, regardless of its schedule."""
        return await self.schedule_source(source_id, utcnow(), manual=True)

    async def schedule_source(self, source_id: int, now: datetime, manual: bool = False) -> Optional[int]:
        """
        Create an execution for a source and enqueue its fetch job.

        Returns:
            The new execution ID, or None if a fetch for the source is already in flight

        Raises:
            SourceNotFoundError: If the source does not exist
        """
        job_id = fetch_job_id(source_id)
        if await self.queues[FETCH_QUEUE].in_flight(job_id):
            logger.info(f"Fetch for source {source_id} still in flight, skipping")
            return None

        async with self.session_factory() as session:
            source = await session.get(Source, source_id)
            if source is None:
                raise SourceNotFoundError(f"Source {source_id} not found")

            execution = Execution(source_id=source.id, status=ExecutionStatus.PENDING.value, started_at=now)
            session.add(execution)
            await session.flush()

            audit = ExecutionLogger(session, execution.id)
            await audit.info(
                "EXEC_START",
                f"Starting execution for source {source.name}" + (" (manual)" if manual else ""),
                sourceId=source.id,
                url=source.url,
                manual=manual,
            )
            await audit.info("FETCH_QUEUED", "Fetch job queued", jobId=job_id)

            source.last_run_at = now
            source.next_run_at = now + timedelta(
                minutes=source.interval_minutes or settings.default_source_interval_minutes
            )
            await session.commit()
            execution_id = execution.id

        try:
            added = await self.queues.enqueue(
                FETCH_QUEUE,
                job_id,
                FetchJob(source_id=source_id, execution_id=execution_id),
            )
        except Exception as e:
            await fail_execution(
                self.session_factory,
                execution_id,
                "FETCH_ENQUEUE_FAIL",
                f"Failed to enqueue fetch job: {e}",
                jobId=job_id,
                errorType=type(e).__name__,
            )
            raise
        if not added:
            # Lost a race with another scheduler instance
            await fail_execution(
                self.session_factory,
                execution_id,
                "FETCH_SKIPPED",
                "fetch already in flight",
                jobId=job_id,
            )
            return None
        return execution_id


async def scheduler_tick(source_scheduler: SourceScheduler):
    """Interval job: schedule due sources and record the run."""
    try:
        await source_scheduler.schedule_due_sources()
    except Exception as e:
        logger.error(f"Scheduler tick failed: {e}", exc_info=True)
        metrics.record_scheduler_run("error", time.time())
        return
    metrics.record_scheduler_run("success", time.time())


async def recover_stalled_jobs(queues: Queues):
    """Interval job: return jobs whose lease expired to their queues."""
    for queue in queues:
        try:
            recovered = await queue.recover_stalled()
        except Exception as e:
            logger.error(f"Stalled job recovery failed on {queue.name}: {e}")
            continue
        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs on {queue.name}")


def setup_scheduler(source_scheduler: SourceScheduler, queues: Queues) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Due sources are scheduled every settings.scheduler_interval_seconds
    - Expired job leases are recovered every settings.stalled_recovery_interval_seconds

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        scheduler_tick,
        IntervalTrigger(seconds=settings.scheduler_interval_seconds),
        args=[source_scheduler],
        id="schedule_sources",
        name="Schedule due sources",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=60,
        replace_existing=True,
    )

    scheduler.add_job(
        recover_stalled_jobs,
        IntervalTrigger(seconds=settings.stalled_recovery_interval_seconds),
        args=[queues],
        id="recover_stalled",
        name="Recover stalled jobs",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info("Scheduler configured")
    return scheduler
