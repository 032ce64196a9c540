"""Extract stage handler."""

import logging
import time
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from harvester import metrics
from harvester.db.audit import ExecutionLogger
from harvester.db.models import Execution, Source
from harvester.errors import ContentParseError, SourceNotFoundError
from harvester.extract import get_extractor
from harvester.extract.base import Extractor
from harvester.queue.base import Queues
from harvester.queue.jobs import NORMALIZE_QUEUE, ExtractJob, NormalizeJob, normalize_job_id

logger = logging.getLogger(__name__)


class ExtractStage:
    """Extract queue handler."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queues: Queues,
        extractor: Optional[Extractor] = None,
    ):
        self.session_factory = session_factory
        self.queues = queues
        # Fixed extractor for tests; otherwise chosen per source type
        self.extractor = extractor

    async def handle(self, job: ExtractJob):
        start = time.monotonic()

        async with self.session_factory() as session:
            source = await session.get(Source, job.source_id)
            if source is None:
                raise SourceNotFoundError(f"Source {job.source_id} not found")

            audit = ExecutionLogger(session, job.execution_id)
            extractor = self.extractor or get_extractor(job.source_type, job.content)
            await audit.info(
                "EXTRACT_START",
                f"Extracting items with {type(extractor).__name__}",
                sourceType=job.source_type,
                contentLength=len(job.content),
            )

            try:
                raw_items = extractor.extract(job.content, source)
            except ContentParseError as e:
                await audit.error("EXTRACT_FAIL", str(e), sourceType=job.source_type)
                await session.commit()
                raise

            await session.execute(
                update(Execution).where(Execution.id == job.execution_id).values(items_found=len(raw_items))
            )
            await audit.info(
                "EXTRACT_OK",
                f"Extracted {len(raw_items)} items",
                itemCount=len(raw_items),
                durationMs=int((time.monotonic() - start) * 1000),
            )
            await audit.info(
                "NORMALIZE_QUEUED",
                "Normalize job queued (scraper path)",
                jobId=normalize_job_id(job.execution_id),
            )
            await session.commit()

        metrics.extracted_items_total.inc(len(raw_items))
        await self.queues.enqueue(
            NORMALIZE_QUEUE,
            normalize_job_id(job.execution_id),
            NormalizeJob(
                source_id=job.source_id,
                execution_id=job.execution_id,
                raw_items=raw_items,
                content_hash=job.content_hash,
            ),
        )

