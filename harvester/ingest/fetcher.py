"""Fetch stage: paginated, size-capped retrieval and routing."""

from __future__ import annotations

import json
import logging
import zlib
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvester import metrics
from harvester.config import settings
from harvester.db.audit import ExecutionLogger, finish_execution
from harvester.db.models import Execution, ExecutionStatus, Source, SourceType
from harvester.errors import ContentTooLargeError, PermanentFetchError, SourceNotFoundError
from harvester.ingest.content import (
    DecompressedTooLargeError,
    compute_content_hash,
    decode_body,
    gunzip_bounded,
    is_gzip,
)
from harvester.ingest.http_client import (
    BlockedError,
    PermanentURLError,
    ResponseTooLargeError,
    SitePolicy,
    default_policy,
    fetch_with_policy,
)
from harvester.ingest.parsers import get_parser
from harvester.logging_config import get_logger
from harvester.queue.base import Queues
from harvester.queue.jobs import (
    EXTRACT_QUEUE,
    NORMALIZE_QUEUE,
    ExtractJob,
    FetchJob,
    NormalizeJob,
    extract_job_id,
    normalize_job_id,
)

logger = logging.getLogger(__name__)

JSON_ITEM_KEYS = ("products", "items", "data", "results")

CAP_PAGE_BYTES = "page_bytes"
CAP_TOTAL_BYTES = "total_bytes"
CAP_PAGES = "pages"
CAP_ITEMS = "items"


@dataclass
class PaginationConfig:
    type: str = "none"  # none, query_param, path
    param: str = "page"
    start_value: int = 1
    increment: int = 1
    max_pages: int = 100

    @classmethod
    def from_source(cls, config: Optional[dict[str, Any]]) -> "PaginationConfig":
        if not config:
            return cls()
        return cls(
            type=config.get("type") or "none",
            param=config.get("param") or "page",
            start_value=int(config.get("startValue", 1)),
            increment=int(config.get("increment", 1)) or 1,
            max_pages=int(config.get("maxPages", 100)),
        )

    @property
    def enabled(self) -> bool:
        return self.type in ("query_param", "path")

    def page_url(self, url: str, value: int) -> str:
        if self.type == "query_param":
            separator = "&" if "?" in url else "?"
            return f"{url}{separator}{self.param}={value}"
        if self.type == "path":
            return f"{url.rstrip('/')}/{value}"
        return url


@dataclass
class FetchCaps:
    max_page_bytes: int
    max_total_bytes: int
    max_pages: int
    max_items: int

    @classmethod
    def from_settings(cls) -> "FetchCaps":
        return cls(
            max_page_bytes=settings.fetch_max_page_bytes,
            max_total_bytes=settings.fetch_max_total_bytes,
            max_pages=settings.fetch_hard_max_pages,
            max_items=settings.fetch_max_items,
        )


@dataclass
class FetchResult:
    """Assembled content of one fetch."""

    content: str
    pages_fetched: int
    items_collected: int
    content_bytes: int
    cap_reached: Optional[str] = None
    cap_detail: dict[str, Any] = field(default_factory=dict)


def extract_json_items(page: str) -> Optional[list]:
    """Items of a JSON page: a top-level list or a common list key. None if not JSON."""
    try:
        parsed = json.loads(page)
    except ValueError:
        return None
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in JSON_ITEM_KEYS:
            if isinstance(parsed.get(key), list):
                return parsed[key]
    return []


class PageCollector:
    """
    Retrieves the pages of one source within the four fetch caps.

    A cap reached after the first page stops pagination and keeps what was
    collected. A first page over the per-page cap raises ContentTooLargeError.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        caps: FetchCaps,
        policy: Optional[SitePolicy] = None,
    ):
        self.client = client
        self.caps = caps
        self.policy = policy or default_policy()

    async def fetch_page(self, url: str, limit: int) -> str:
        page = await fetch_with_policy(self.client, url, self.policy, max_bytes=limit)
        body = page.content
        if is_gzip(url, body):
            try:
                body = gunzip_bounded(body, limit)
            except DecompressedTooLargeError as e:
                raise ResponseTooLargeError(url, limit) from e
        return decode_body(body)

    async def collect(self, source_url: str, source_type: str, pagination: PaginationConfig) -> FetchResult:
        max_pages = min(pagination.max_pages, self.caps.max_pages) if pagination.enabled else 1
        json_mode = source_type == SourceType.JSON.value

        pages: list[str] = []
        json_items: list = []
        total_bytes = 0
        pages_fetched = 0
        cap: Optional[str] = None
        cap_detail: dict[str, Any] = {}
        value = pagination.start_value

        while pages_fetched < max_pages:
            url = pagination.page_url(source_url, value) if pagination.enabled else source_url
            limit = min(self.caps.max_page_bytes, self.caps.max_total_bytes - total_bytes)
            try:
                page = await self.fetch_page(url, limit)
            except ResponseTooLargeError as e:
                if pages_fetched == 0:
                    raise ContentTooLargeError(url, e.limit) from e
                cap = CAP_PAGE_BYTES if limit == self.caps.max_page_bytes else CAP_TOTAL_BYTES
                cap_detail = {"url": url, "limit": e.limit, "page": pages_fetched + 1}
                break

            pages_fetched += 1
            total_bytes += len(page.encode("utf-8"))

            if json_mode:
                items = extract_json_items(page)
                if items is None:
                    if not json_items:
                        # Unparseable first page is handed on as raw content
                        json_mode = False
                        pages.append(page)
                    break
                if not items:
                    break
                room = self.caps.max_items - len(json_items)
                json_items.extend(items[:room])
                if len(items) > room:
                    cap = CAP_ITEMS
                    cap_detail = {"limit": self.caps.max_items, "page": pages_fetched}
                    break
                if len(json_items) >= self.caps.max_items:
                    break
            else:
                pages.append(page)

            if total_bytes >= self.caps.max_total_bytes:
                cap = CAP_TOTAL_BYTES
                cap_detail = {"limit": self.caps.max_total_bytes, "page": pages_fetched}
                break

            value += pagination.increment

        if cap is None and pagination.enabled and pages_fetched == max_pages < pagination.max_pages:
            cap = CAP_PAGES
            cap_detail = {"limit": self.caps.max_pages, "configuredMaxPages": pagination.max_pages}

        if json_mode:
            content = json.dumps(json_items)
            items_collected = len(json_items)
        else:
            content = "\n".join(pages)
            items_collected = len(pages)

        return FetchResult(
            content=content,
            pages_fetched=pages_fetched,
            items_collected=items_collected,
            content_bytes=total_bytes,
            cap_reached=cap,
            cap_detail=cap_detail,
        )


class FetchStage:
    """Fetch queue handler."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queues: Queues,
        client: httpx.AsyncClient,
        caps: Optional[FetchCaps] = None,
        policy: Optional[SitePolicy] = None,
    ):
        self.session_factory = session_factory
        self.queues = queues
        self.client = client
        self.caps = caps or FetchCaps.from_settings()
        self.policy = policy

    async def handle(self, job: FetchJob):
        log = get_logger(__name__, execution_id=job.execution_id, source_id=job.source_id)

        async with self.session_factory() as session:
            source = await session.get(Source, job.source_id)
            if source is None:
                raise SourceNotFoundError(f"Source {job.source_id} not found")
            pagination = PaginationConfig.from_source(source.pagination_config)
            audit = ExecutionLogger(session, job.execution_id)
            await audit.info(
                "FETCH_START",
                f"Fetching {source.url}" + (" (with pagination)" if pagination.enabled else ""),
                url=source.url,
                pagination=pagination.type,
            )
            await session.commit()

            try:
                result = await self._collect(source, pagination)
            except Exception as e:
                # Every failed attempt is audited; the queue decides whether to retry
                await audit.error(
                    "FETCH_FAIL",
                    f"Failed to fetch {source.url}: {e}",
                    errorType=type(e).__name__,
                )
                await session.commit()
                log.warning(f"Fetch failed for source {source.id}: {e}")
                raise

            metrics.record_fetch(source.source_kind, result.pages_fetched, result.content_bytes)

            if result.cap_reached:
                metrics.fetch_cap_reached_total.labels(cap=result.cap_reached).inc()
                await audit.warn(
                    "FETCH_CAP_REACHED",
                    f"Stopped fetching early: {result.cap_reached} cap reached",
                    cap=result.cap_reached,
                    **result.cap_detail,
                )

            await audit.info(
                "FETCH_OK",
                f"Successfully fetched {result.pages_fetched} page(s) ({result.content_bytes} bytes total)",
                contentLength=result.content_bytes,
                pagesFetched=result.pages_fetched,
                itemsCollected=result.items_collected,
            )

            content_hash = compute_content_hash(result.content)

            if source.feed_hash == content_hash:
                metrics.feeds_unchanged_total.inc()
                await audit.info(
                    "FEED_UNCHANGED",
                    "Feed content unchanged (hash match), skipping processing",
                    contentHash=content_hash,
                )
                await finish_execution(
                    session,
                    job.execution_id,
                    ExecutionStatus.SUCCESS,
                    items_found=0,
                    items_upserted=0,
                )
                await audit.info("EXEC_DONE", "Execution completed (feed unchanged)")
                await session.commit()
                log.info(f"Source {source.id} unchanged, execution {job.execution_id} done")
                return

            await audit.info(
                "FEED_CHANGED",
                "Feed content changed, proceeding with processing"
                if source.feed_hash
                else "No previous hash found, proceeding with processing",
                oldHash=source.feed_hash,
                newHash=content_hash,
            )

            if source.affiliate_network:
                await self._route_to_parser(session, audit, source, job, result.content, content_hash)
                return

            await audit.info(
                "EXTRACT_QUEUED",
                "Extract job queued (scraper path)",
                jobId=extract_job_id(job.execution_id),
            )
            await session.commit()
            await self.queues.enqueue(
                EXTRACT_QUEUE,
                extract_job_id(job.execution_id),
                ExtractJob(
                    source_id=source.id,
                    execution_id=job.execution_id,
                    content=result.content,
                    content_hash=content_hash,
                    source_type=source.source_type,
                ),
            )

    async def _collect(self, source: Source, pagination: PaginationConfig) -> FetchResult:
        caps = self.caps
        if source.affiliate_network:
            # Affiliate exports are single large files
            caps = FetchCaps(
                max_page_bytes=max(caps.max_page_bytes, settings.affiliate_max_bytes),
                max_total_bytes=max(caps.max_total_bytes, settings.affiliate_max_bytes),
                max_pages=caps.max_pages,
                max_items=caps.max_items,
            )
        collector = PageCollector(self.client, caps, self.policy)
        try:
            return await collector.collect(source.url, source.source_type, pagination)
        except (BlockedError, PermanentURLError) as e:
            raise PermanentFetchError(str(e)) from e
        except zlib.error as e:
            raise PermanentFetchError(f"Corrupt gzip content from {source.url}: {e}") from e

    async def _route_to_parser(
        self,
        session: AsyncSession,
        audit: ExecutionLogger,
        source: Source,
        job: FetchJob,
        content: str,
        content_hash: str,
    ):
        network = source.affiliate_network
        await audit.info("PARSE_START", f"Routing to {network} parser", network=network)
        parser = get_parser(network)
        items = parser.parse(content)
        await audit.info(
            "PARSE_OK",
            f"Parsed {len(items)} items from {network} feed",
            itemCount=len(items),
        )

        if len(items) > self.caps.max_items:
            metrics.fetch_cap_reached_total.labels(cap=CAP_ITEMS).inc()
            await audit.warn(
                "FETCH_CAP_REACHED",
                f"Feed truncated to {self.caps.max_items} items",
                cap=CAP_ITEMS,
                limit=self.caps.max_items,
                itemsParsed=len(items),
            )
            items = items[: self.caps.max_items]

        await session.execute(
            update(Execution).where(Execution.id == job.execution_id).values(items_found=len(items))
        )
        await audit.info(
            "NORMALIZE_QUEUED",
            "Normalize job queued (feed path)",
            jobId=normalize_job_id(job.execution_id),
        )
        await session.commit()

        await self.queues.enqueue(
            NORMALIZE_QUEUE,
            normalize_job_id(job.execution_id),
            NormalizeJob(
                source_id=source.id,
                execution_id=job.execution_id,
                raw_items=items,
                content_hash=content_hash,
            ),
        )

