"""Normalize raw items into canonical products."""

import logging
import re
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol
from urllib.parse import urljoin, urlsplit

from sqlalchemy.ext.asyncio import async_sessionmaker

from harvester import metrics
from harvester.db.audit import ExecutionLogger
from harvester.db.models import Source
from harvester.errors import SourceNotFoundError
from harvester.normalize.ammo import AmmoNormalizer
from harvester.normalize.raw_item import (
    ItemValidationError,
    Normalized,
    NormalizedProduct,
    NormalizeResult,
    RawItem,
    Skipped,
)
from harvester.queue.base import Queues
from harvester.queue.jobs import WRITE_QUEUE, NormalizeJob, WriteJob, write_job_id

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = re.compile(r"[$£€¥]")
PRICE_NUMBER = re.compile(r"\d+\.?\d*")
DECIMAL_COMMA = re.compile(r"^\d{1,3},\d{2}$")

OUT_OF_STOCK_VALUES = {"false", "0", "no", "out of stock", "outofstock", "sold out", "unavailable"}

CATEGORY_KEYWORDS = [
    ("Electronics", ("laptop", "computer", "monitor", "keyboard", "mouse")),
    ("Electronics", ("phone", "smartphone", "mobile")),
    ("Electronics", ("watch", "smartwatch")),
    ("Home", ("furniture", "chair", "desk", "table")),
    ("Fashion", ("clothing", "shirt", "pants")),
    ("Sports", ("sport", "fitness", "gym", "bike")),
]


class DomainNormalizer(Protocol):
    """Domain-specific attribute extraction plugged into the item normalizer."""

    category: str

    def apply(self, name: str, upc: Optional[str] = None, brand: Optional[str] = None) -> Any:
        ...

    def is_domain_item(self, attributes: Any) -> bool:
        ...


def extract_price(value: Any) -> Optional[Decimal]:
    """
    Parse a price from a number or text such as "$1,299.99".

    A single comma followed by two digits with no dot ("12,50") is read as
    a decimal comma; other commas are thousands separators.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        try:
            price = Decimal(str(value))
        except InvalidOperation:
            return None
        return price if price > 0 else None

    text = CURRENCY_SYMBOLS.sub("", str(value)).strip()
    if DECIMAL_COMMA.match(text):
        text = text.replace(",", ".")
    else:
        text = text.replace(",", "")

    match = PRICE_NUMBER.search(text)
    if not match:
        return None
    price = Decimal(match.group(0).rstrip("."))
    return price if price > 0 else None


def extract_brand(name: str) -> Optional[str]:
    """First word of the product name."""
    words = name.split()
    return words[0] if words else None


def categorize_product(name: str, description: str = "") -> str:
    text = f"{name} {description}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "General"


def parse_in_stock(value: Any) -> bool:
    """True unless the value explicitly says out of stock."""
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() not in OUT_OF_STOCK_VALUES


def _currency(raw: RawItem) -> str:
    code = (raw.model_extra or {}).get("currency")
    if isinstance(code, str) and len(code.strip()) == 3:
        return code.strip().upper()
    return "USD"


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class ItemNormalizer:
    """Turns one raw item into a NormalizedProduct or a Skipped result."""

    def __init__(self, domain: Optional[DomainNormalizer] = None):
        self.domain = domain or AmmoNormalizer()

    def normalize_item(self, data: Any, source_url: str, source_name: str, index: int = 0) -> NormalizeResult:
        try:
            product = self._normalize(RawItem.parse(data), source_url, source_name)
        except ItemValidationError as e:
            return Skipped(index=index, reason=e.reason, message=str(e))
        return Normalized(index=index, product=product)

    def _normalize(self, raw: RawItem, source_url: str, source_name: str) -> NormalizedProduct:
        price = extract_price(raw.price_text or raw.price)
        if price is None:
            raise ItemValidationError("invalid_price", f"No positive price in {raw.price_text or raw.price!r}")

        name = (raw.name or raw.title or "").strip()
        if not name:
            raise ItemValidationError("missing_name", "Item has no name or title")

        origin = origin_of(source_url)
        url = (raw.url or raw.link or "").strip()
        if url and not url.startswith("http"):
            url = urljoin(origin + "/", url)

        description = (raw.description or "").strip() or None
        brand = (raw.brand or "").strip() or extract_brand(name)
        attrs = self.domain.apply(name, upc=raw.upc, brand=brand)

        category = categorize_product(name, description or "")
        if category == "General" and self.domain.is_domain_item(attrs):
            category = self.domain.category

        return NormalizedProduct(
            product_id=attrs.product_id,
            name=name,
            description=description,
            category=category,
            brand=attrs.brand,
            image_url=raw.image_url,
            price=price,
            currency=_currency(raw),
            url=url or source_url,
            in_stock=parse_in_stock(raw.in_stock),
            retailer_name=source_name,
            retailer_website=origin,
            upc=attrs.upc,
            caliber=attrs.caliber,
            grain_weight=attrs.grain_weight,
            case_material=attrs.case_material,
            purpose=attrs.purpose,
            round_count=attrs.round_count,
            load_type=attrs.load_type,
        )


class NormalizeStage:
    """Normalize queue handler."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queues: Queues,
        normalizer: Optional[ItemNormalizer] = None,
    ):
        self.session_factory = session_factory
        self.queues = queues
        self.normalizer = normalizer or ItemNormalizer()

    async def handle(self, job: NormalizeJob):
        start = time.monotonic()

        async with self.session_factory() as session:
            audit = ExecutionLogger(session, job.execution_id)
            source = await session.get(Source, job.source_id)
            if source is None:
                raise SourceNotFoundError(f"Source {job.source_id} not found")

            await audit.info(
                "NORMALIZE_START",
                f"Starting normalization of {len(job.raw_items)} items",
                sourceId=job.source_id,
                itemCount=len(job.raw_items),
            )

            products: list[NormalizedProduct] = []
            for i, data in enumerate(job.raw_items):
                result = self.normalizer.normalize_item(data, source.url, source.name, i)
                if isinstance(result, Normalized):
                    products.append(result.product)
                    continue

                metrics.normalized_items_total.labels(outcome="skipped").inc()
                await audit.warn(
                    "NORMALIZE_ITEM_SKIP",
                    f"Skipped item {i}: {result.message}",
                    itemIndex=i,
                    reason=result.reason,
                    rawItemPreview=str(data)[:200],
                )

            metrics.normalized_items_total.labels(outcome="normalized").inc(len(products))

            await audit.info(
                "NORMALIZE_OK",
                f"Normalized {len(products)}/{len(job.raw_items)} items",
                durationMs=int((time.monotonic() - start) * 1000),
                itemsInput=len(job.raw_items),
                itemsNormalized=len(products),
                itemsSkipped=len(job.raw_items) - len(products),
            )
            await audit.info("WRITE_QUEUED", "Write job queued", jobId=write_job_id(job.execution_id))
            await session.commit()

        await self.queues.enqueue(
            WRITE_QUEUE,
            write_job_id(job.execution_id),
            WriteJob(
                source_id=job.source_id,
                execution_id=job.execution_id,
                items=[p.model_dump(mode="json") for p in products],
                content_hash=job.content_hash,
            ),
        )
