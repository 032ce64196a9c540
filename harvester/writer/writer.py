"""Batched, idempotent persistence of normalized products and prices."""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from harvester import metrics
from harvester.config import settings
from harvester.db.audit import ExecutionLogger, finish_execution
from harvester.db.models import (
    Execution,
    ExecutionStatus,
    Price,
    Product,
    Retailer,
    Source,
    SourceProduct,
)
from harvester.errors import ExecutionNotFoundError, SourceNotFoundError, TotalWriteFailureError
from harvester.normalize.raw_item import NormalizedProduct
from harvester.queue.base import Queues
from harvester.queue.jobs import (
    ALERT_QUEUE,
    RESOLVE_QUEUE,
    AlertJob,
    ResolveJob,
    WriteJob,
    alert_job_id,
    resolve_job_id,
)
from harvester.writer.variance import VarianceObservation, observe_price_change, source_kind_label

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Descriptive attributes updated on an existing product when the new value is not null
PRODUCT_UPDATE_FIELDS = (
    "description",
    "image_url",
    "brand",
    "upc",
    "caliber",
    "grain_weight",
    "case_material",
    "purpose",
    "round_count",
    "load_type",
)


@dataclass
class SourceContext:
    """Source attributes the writer needs, detached from any session."""

    id: int
    retailer_id: Optional[int]
    source_kind: str


@dataclass
class PriceChange:
    product_id: str
    retailer_id: int
    new_price: Decimal
    new_in_stock: bool
    old_price: Optional[Decimal] = None
    old_in_stock: Optional[bool] = None

    @property
    def price_changed(self) -> bool:
        return self.old_price is not None and self.old_price != self.new_price


@dataclass
class ItemFailure:
    product_id: str
    name: str
    error: str


@dataclass
class BatchResult:
    """Outcome of writing one batch (or one item in fallback mode)."""

    upserted: int = 0
    changes: list[PriceChange] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)

    def merge(self, other: "BatchResult"):
        self.upserted += other.upserted
        self.changes.extend(other.changes)
        self.failures.extend(other.failures)


def identity_key_for(source_id: int, url: str) -> str:
    """Stable identity of a listing within a source."""
    return hashlib.sha256(f"{source_id}:{url}".encode("utf-8")).hexdigest()


def product_fields(item: NormalizedProduct) -> dict:
    return {
        "name": item.name,
        "description": item.description,
        "category": item.category,
        "brand": item.brand,
        "image_url": item.image_url,
        "upc": item.upc,
        "caliber": item.caliber,
        "grain_weight": item.grain_weight,
        "case_material": item.case_material,
        "purpose": item.purpose,
        "round_count": item.round_count,
        "load_type": item.load_type,
    }


async def resolve_retailers(
    session: AsyncSession,
    source: SourceContext,
    items: list[NormalizedProduct],
) -> dict[str, int]:
    """Map retailer website -> retailer id, creating retailers that do not exist yet."""
    if source.retailer_id is not None:
        return {item.retailer_website: source.retailer_id for item in items}

    names: dict[str, str] = {}
    for item in items:
        names.setdefault(item.retailer_website, item.retailer_name)

    result = await session.execute(select(Retailer).where(Retailer.website.in_(names)))
    retailers = {r.website: r for r in result.scalars()}

    for website, name in names.items():
        if website not in retailers:
            retailer = Retailer(name=name, website=website)
            session.add(retailer)
            retailers[website] = retailer
    await session.flush()

    return {website: r.id for website, r in retailers.items()}


async def upsert_products(session: AsyncSession, items: list[NormalizedProduct]):
    """Create new products; fill non-null attributes on existing ones."""
    ids = {item.product_id for item in items}
    result = await session.execute(select(Product).where(Product.id.in_(ids)))
    products = {p.id: p for p in result.scalars()}

    for item in items:
        fields = product_fields(item)
        product = products.get(item.product_id)
        if product is None:
            product = Product(id=item.product_id, **fields)
            session.add(product)
            products[item.product_id] = product
            continue
        for name in PRODUCT_UPDATE_FIELDS:
            value = fields[name]
            if value is not None:
                setattr(product, name, value)
    await session.flush()


async def upsert_source_products(
    session: AsyncSession,
    source: SourceContext,
    items: list[NormalizedProduct],
    execution_id: int,
) -> dict[str, SourceProduct]:
    """Upsert listings by (source, url). Returns url -> SourceProduct."""
    urls = {item.url for item in items}
    result = await session.execute(
        select(SourceProduct).where(
            SourceProduct.source_id == source.id,
            SourceProduct.url.in_(urls),
        )
    )
    listings = {sp.url: sp for sp in result.scalars()}

    for item in items:
        listing = listings.get(item.url)
        if listing is None:
            listing = SourceProduct(
                source_id=source.id,
                url=item.url,
                identity_key=identity_key_for(source.id, item.url),
                title=item.name,
            )
            session.add(listing)
            listings[item.url] = listing
        listing.title = item.name
        listing.brand = item.brand or listing.brand
        listing.product_id = item.product_id
        listing.last_seen_execution_id = execution_id
    await session.flush()
    return listings


async def latest_prices(
    session: AsyncSession,
    pairs: set[tuple[str, int]],
) -> dict[tuple[str, int], Price]:
    """Most recent price row per (product_id, retailer_id), in one query."""
    if not pairs:
        return {}
    product_ids = {p for p, _ in pairs}
    retailer_ids = {r for _, r in pairs}

    latest = (
        select(func.max(Price.id).label("max_id"))
        .where(Price.product_id.in_(product_ids), Price.retailer_id.in_(retailer_ids))
        .group_by(Price.product_id, Price.retailer_id)
        .subquery()
    )
    result = await session.execute(select(Price).join(latest, Price.id == latest.c.max_id))
    return {
        (p.product_id, p.retailer_id): p
        for p in result.scalars()
        if (p.product_id, p.retailer_id) in pairs
    }


async def write_items(
    session: AsyncSession,
    source: SourceContext,
    items: list[NormalizedProduct],
    execution_id: int,
) -> BatchResult:
    """
    Write items inside the caller's transaction.

    A price row is inserted only when no previous row exists for the
    (product, retailer) pair, or when the price (to the cent) or stock state
    differs from the latest row. Repeated pairs within ``items`` collapse to
    their last occurrence.
    """
    result = BatchResult()

    retailer_ids = await resolve_retailers(session, source, items)
    await upsert_products(session, items)
    listings = await upsert_source_products(session, source, items, execution_id)

    by_pair: dict[tuple[str, int], NormalizedProduct] = {}
    for item in items:
        by_pair[(item.product_id, retailer_ids[item.retailer_website])] = item

    existing = await latest_prices(session, set(by_pair))

    for (product_id, retailer_id), item in by_pair.items():
        new_price = item.price.quantize(CENT)
        previous = existing.get((product_id, retailer_id))
        old_price = previous.price.quantize(CENT) if previous is not None else None

        if previous is not None and old_price == new_price and previous.in_stock == item.in_stock:
            continue

        listing = listings[item.url]
        session.add(
            Price(
                product_id=product_id,
                retailer_id=retailer_id,
                source_id=source.id,
                source_product_id=listing.id,
                price=new_price,
                currency=item.currency,
                url=item.url,
                in_stock=item.in_stock,
                ingestion_run_id=execution_id,
            )
        )
        result.upserted += 1
        result.changes.append(
            PriceChange(
                product_id=product_id,
                retailer_id=retailer_id,
                new_price=new_price,
                new_in_stock=item.in_stock,
                old_price=old_price,
                old_in_stock=previous.in_stock if previous is not None else None,
            )
        )

    await session.flush()
    return result


async def changes_for_execution(session: AsyncSession, execution_id: int) -> list[PriceChange]:
    """
    Price changes recorded by an execution, rebuilt from its price rows.

    Each row is compared with the row before it for the same pair, so the
    result is the same whether the rows were committed by this delivery of
    the write job or an earlier one. A pair written more than once in the
    run keeps its first previous value and its last new value.
    """
    earlier = aliased(Price)
    previous_id = (
        select(func.max(earlier.id))
        .where(
            earlier.product_id == Price.product_id,
            earlier.retailer_id == Price.retailer_id,
            earlier.id < Price.id,
        )
        .correlate(Price)
        .scalar_subquery()
    )
    rows = (
        await session.execute(
            select(Price, previous_id.label("previous_id"))
            .where(Price.ingestion_run_id == execution_id)
            .order_by(Price.id)
        )
    ).all()

    previous_ids = {prev_id for _, prev_id in rows if prev_id is not None}
    previous_rows: dict[int, Price] = {}
    if previous_ids:
        result = await session.scalars(select(Price).where(Price.id.in_(previous_ids)))
        previous_rows = {p.id: p for p in result}

    changes: dict[tuple[str, int], PriceChange] = {}
    for price, prev_id in rows:
        pair = (price.product_id, price.retailer_id)
        change = changes.get(pair)
        if change is not None:
            change.new_price = price.price.quantize(CENT)
            change.new_in_stock = price.in_stock
            continue
        previous = previous_rows.get(prev_id)
        changes[pair] = PriceChange(
            product_id=price.product_id,
            retailer_id=price.retailer_id,
            new_price=price.price.quantize(CENT),
            new_in_stock=price.in_stock,
            old_price=previous.price.quantize(CENT) if previous is not None else None,
            old_in_stock=previous.in_stock if previous is not None else None,
        )
    return list(changes.values())


async def listings_for_execution(session: AsyncSession, execution_id: int) -> list[tuple[int, str]]:
    """(id, identity_key) of every listing last seen by an execution."""
    result = await session.execute(
        select(SourceProduct.id, SourceProduct.identity_key)
        .where(SourceProduct.last_seen_execution_id == execution_id)
        .order_by(SourceProduct.id)
    )
    return [(sp_id, identity_key) for sp_id, identity_key in result.all()]


def alertable(changes: list[PriceChange]) -> list[PriceChange]:
    # First observations of a pair have nothing to compare against
    return [c for c in changes if c.old_price is not None]


class PriceWriter:
    """Write queue handler."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queues: Queues,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.queues = queues
        self.batch_size = batch_size or settings.writer_batch_size

    async def write_batch(
        self,
        source: SourceContext,
        items: list[NormalizedProduct],
        execution_id: int,
    ) -> BatchResult:
        """Write one batch in a single transaction, falling back to per-item transactions."""
        try:
            async with self.session_factory() as session:
                result = await write_items(session, source, items, execution_id)
                await session.commit()
            return result
        except Exception as e:
            logger.warning(
                f"Batch of {len(items)} items failed for execution {execution_id}, "
                f"falling back to item-by-item: {e}"
            )
            async with self.session_factory() as session:
                await ExecutionLogger(session, execution_id).warn(
                    "WRITE_BATCH_FALLBACK",
                    f"Batch write failed, retrying {len(items)} items individually",
                    error=str(e)[:500],
                    batchSize=len(items),
                )
                await session.commit()

        combined = BatchResult()
        for item in items:
            try:
                async with self.session_factory() as session:
                    item_result = await write_items(session, source, [item], execution_id)
                    await session.commit()
                combined.merge(item_result)
            except Exception as item_error:
                metrics.writer_item_failures_total.inc()
                combined.failures.append(
                    ItemFailure(product_id=item.product_id, name=item.name, error=str(item_error)[:500])
                )
        return combined

    async def handle(self, job: WriteJob):
        start = time.monotonic()
        items = [NormalizedProduct.model_validate(i) for i in job.items]
        batch_count = (len(items) + self.batch_size - 1) // self.batch_size

        async with self.session_factory() as session:
            execution = await session.get(Execution, job.execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {job.execution_id} not found")

            src = await session.get(Source, job.source_id)
            if src is None:
                raise SourceNotFoundError(f"Source {job.source_id} not found")
            source = SourceContext(id=src.id, retailer_id=src.retailer_id, source_kind=src.source_kind)

            if execution.status == ExecutionStatus.SUCCESS.value:
                # A previous delivery committed but may have died before queueing every job
                logger.info(
                    f"Execution {job.execution_id} already succeeded; re-queueing downstream jobs only"
                )
                changes = await changes_for_execution(session, job.execution_id)
                listings = await listings_for_execution(session, job.execution_id)
                await self._enqueue_downstream(job.execution_id, source, changes, listings)
                return
            if execution.status != ExecutionStatus.PENDING.value:
                logger.info(
                    f"Execution {job.execution_id} is {execution.status}; skipping re-delivered write"
                )
                return

            await ExecutionLogger(session, job.execution_id).info(
                "WRITE_START",
                f"Starting batched write: {len(items)} items in {batch_count} batches",
                totalItems=len(items),
                batchCount=batch_count,
                batchSize=self.batch_size,
            )
            await session.commit()

        total = BatchResult()
        for offset in range(0, len(items), self.batch_size):
            total.merge(
                await self.write_batch(source, items[offset:offset + self.batch_size], job.execution_id)
            )

        if items and len(total.failures) == len(items):
            raise TotalWriteFailureError(len(items), total.failures[0].error)

        kind = source_kind_label(source.source_kind)
        for _ in range(total.upserted):
            metrics.record_price_written(kind)

        await self._finish(job, source, items, total.failures, batch_count, start)

    async def _finish(
        self,
        job: WriteJob,
        source: SourceContext,
        items: list[NormalizedProduct],
        failures: list[ItemFailure],
        batch_count: int,
        start: float,
    ):
        sample = settings.writer_error_sample_size

        async with self.session_factory() as session:
            # Rows committed by an earlier delivery of this job count too
            changes = await changes_for_execution(session, job.execution_id)
            listings = await listings_for_execution(session, job.execution_id)
            variances: list[VarianceObservation] = [
                observe_price_change(
                    c.product_id, c.retailer_id, c.old_price, c.new_price, source.source_kind
                )
                for c in changes
                if c.price_changed
            ]
            alert_ids = [
                alert_job_id(job.execution_id, c.product_id, c.retailer_id) for c in alertable(changes)
            ]

            audit = ExecutionLogger(session, job.execution_id)
            if failures:
                await audit.warn(
                    "WRITE_ERRORS",
                    f"{len(failures)} items failed to write",
                    errorCount=len(failures),
                    errors=[
                        {"productId": f.product_id, "name": f.name, "error": f.error}
                        for f in failures[:sample]
                    ],
                    truncated=len(failures) > sample,
                )

            exceeded = [v for v in variances if v.exceeded]
            await audit.info(
                "WRITE_OK",
                f"Write complete: {len(changes)} prices updated, {len(variances)} price changes",
                durationMs=int((time.monotonic() - start) * 1000),
                itemsInput=len(items),
                itemsUpserted=len(changes),
                priceChanges=len(variances),
                errors=len(failures),
                batchCount=batch_count,
                sourceId=source.id,
                varianceExceeded=len(exceeded),
                varianceSample=[
                    {
                        "productId": v.product_id,
                        "retailerId": v.retailer_id,
                        "oldPrice": str(v.old_price),
                        "newPrice": str(v.new_price),
                        "variancePct": v.variance_pct,
                        "bucket": v.bucket,
                        "action": v.action.value,
                    }
                    for v in exceeded[:sample]
                ],
                contentHashUpdated=bool(job.content_hash),
            )

            transitioned = await finish_execution(
                session,
                job.execution_id,
                ExecutionStatus.SUCCESS,
                items_upserted=len(changes),
            )
            if transitioned and job.content_hash:
                await session.execute(
                    update(Source).where(Source.id == source.id).values(feed_hash=job.content_hash)
                )

            if alert_ids:
                await audit.info(
                    "ALERT_QUEUED",
                    f"Queued {len(alert_ids)} alert jobs",
                    alertCount=len(alert_ids),
                    jobIds=alert_ids[:sample],
                )
            if listings:
                await audit.info(
                    "RESOLVE_QUEUED",
                    f"Queued {len(listings)} resolver jobs",
                    resolveCount=len(listings),
                    debounceSeconds=settings.resolve_debounce_seconds,
                )
            await session.commit()

        await self._enqueue_downstream(job.execution_id, source, changes, listings)

    async def _enqueue_downstream(
        self,
        execution_id: int,
        source: SourceContext,
        changes: list[PriceChange],
        listings: list[tuple[int, str]],
    ):
        """Queue alert and resolve jobs; identities already queued are rejected by the queue."""
        for change in alertable(changes):
            await self.queues.enqueue(
                ALERT_QUEUE,
                alert_job_id(execution_id, change.product_id, change.retailer_id),
                AlertJob(
                    execution_id=execution_id,
                    product_id=change.product_id,
                    retailer_id=change.retailer_id,
                    old_price=change.old_price,
                    new_price=change.new_price,
                    old_in_stock=change.old_in_stock,
                    new_in_stock=change.new_in_stock,
                ),
            )

        for sp_id, identity_key in listings:
            await self.queues.enqueue(
                RESOLVE_QUEUE,
                resolve_job_id(sp_id),
                ResolveJob(
                    source_product_id=sp_id,
                    source_id=source.id,
                    identity_key=f"{source.id}:{identity_key}",
                    execution_id=execution_id,
                ),
                delay_seconds=settings.resolve_debounce_seconds,
            )
