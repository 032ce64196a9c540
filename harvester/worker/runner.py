"""Pipeline assembly: clients, queues, stage handlers and their workers."""

import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from harvester.alerter.alerter import Alerter
from harvester.alerter.rate_limit import RateLimiter
from harvester.config import settings
from harvester.db.audit import execution_failure_hook
from harvester.db.session import AsyncSessionLocal
from harvester.extract.stage import ExtractStage
from harvester.ingest.fetcher import FetchStage
from harvester.ingest.http_client import create_client
from harvester.normalize.processor import NormalizeStage
from harvester.notify.email import EmailSender
from harvester.queue.base import Queues
from harvester.queue.jobs import (
    ALERT_QUEUE,
    EXTRACT_QUEUE,
    FETCH_QUEUE,
    NORMALIZE_QUEUE,
    NOTIFY_QUEUE,
    WRITE_QUEUE,
    AlertJob,
    DelayedNotificationJob,
    ExtractJob,
    FetchJob,
    NormalizeJob,
    WriteJob,
)
from harvester.queue.redis_queue import RedisJobQueue
from harvester.queue.retry import policy_for
from harvester.queue.worker import StageWorker
from harvester.worker.scheduler import SourceScheduler, setup_scheduler
from harvester.writer.writer import PriceWriter

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Owns every long-lived client and the stage workers built on them.

    Clients are created once here and injected into the stages; nothing
    below this layer opens its own Redis or HTTP connections.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        redis_client: Optional[redis.Redis] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        queues: Optional[Queues] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.redis = redis_client or redis.from_url(settings.redis_url, decode_responses=True)
        self.http = http_client or create_client()
        self.queues = queues or Queues(lambda name: RedisJobQueue(name, self.redis))

        self.source_scheduler = SourceScheduler(self.session_factory, self.queues)
        self.fetch_stage = FetchStage(self.session_factory, self.queues, self.http)
        self.extract_stage = ExtractStage(self.session_factory, self.queues)
        self.normalize_stage = NormalizeStage(self.session_factory, self.queues)
        self.writer = PriceWriter(self.session_factory, self.queues)
        self.alerter = Alerter(
            self.session_factory,
            self.queues,
            RateLimiter(self.redis),
            EmailSender(self.http),
        )

        self.workers = self._build_workers()
        self.scheduler = None

    def _build_workers(self) -> list[StageWorker]:
        def worker(queue_name, job_model, handler, concurrency, hook=True):
            return StageWorker(
                stage=queue_name,
                queue=self.queues[queue_name],
                job_model=job_model,
                handler=handler,
                policy=policy_for(queue_name),
                concurrency=concurrency,
                on_permanent_failure=(
                    execution_failure_hook(queue_name, self.session_factory) if hook else None
                ),
            )

        return [
            worker(FETCH_QUEUE, FetchJob, self.fetch_stage.handle, settings.fetch_concurrency),
            worker(EXTRACT_QUEUE, ExtractJob, self.extract_stage.handle, settings.extract_concurrency),
            worker(NORMALIZE_QUEUE, NormalizeJob, self.normalize_stage.handle, settings.normalize_concurrency),
            worker(WRITE_QUEUE, WriteJob, self.writer.handle, settings.write_concurrency),
            # Alert failures never fail the (already successful) execution
            worker(ALERT_QUEUE, AlertJob, self.alerter.handle, settings.alert_concurrency, hook=False),
            worker(
                NOTIFY_QUEUE,
                DelayedNotificationJob,
                self.alerter.handle_delayed,
                settings.notify_concurrency,
                hook=False,
            ),
        ]

    async def start(self, with_scheduler: bool = True):
        for stage_worker in self.workers:
            await stage_worker.start()
        if with_scheduler:
            self.scheduler = setup_scheduler(self.source_scheduler, self.queues)
            self.scheduler.start()
            logger.info("Scheduler started")
        logger.info("Pipeline started")

    async def stop(self):
        logger.info("Stopping pipeline...")
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        for stage_worker in self.workers:
            await stage_worker.stop()
        await self.queues.close()
        await self.http.aclose()
        await self.redis.aclose()
        logger.info("Pipeline stopped")
