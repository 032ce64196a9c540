"""Job payload models, queue names and job identities."""

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

FETCH_QUEUE = "fetch"
EXTRACT_QUEUE = "extract"
NORMALIZE_QUEUE = "normalize"
WRITE_QUEUE = "write"
ALERT_QUEUE = "alert"
NOTIFY_QUEUE = "notify"
RESOLVE_QUEUE = "resolve"

QUEUE_NAMES = (
    FETCH_QUEUE,
    EXTRACT_QUEUE,
    NORMALIZE_QUEUE,
    WRITE_QUEUE,
    ALERT_QUEUE,
    NOTIFY_QUEUE,
    RESOLVE_QUEUE,
)


class JobPayload(BaseModel):
    """Base payload: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class FetchJob(JobPayload):
    source_id: int
    execution_id: int


class ExtractJob(JobPayload):
    source_id: int
    execution_id: int
    content: str
    content_hash: str
    source_type: str


class NormalizeJob(JobPayload):
    source_id: int
    execution_id: int
    raw_items: list[Any]
    content_hash: str


class WriteJob(JobPayload):
    source_id: int
    execution_id: int
    items: list[dict[str, Any]]
    content_hash: str


class AlertJob(JobPayload):
    execution_id: int
    product_id: str
    retailer_id: int
    old_price: Optional[Decimal] = None
    new_price: Decimal
    old_in_stock: Optional[bool] = None
    new_in_stock: bool


class DelayedNotificationJob(JobPayload):
    alert_id: int
    watchlist_item_id: int
    user_id: int
    product_id: str
    retailer_id: int
    rule_type: str
    claim_key: str
    old_price: Optional[Decimal] = None
    new_price: Decimal
    execution_id: Optional[int] = None


class ResolveJob(JobPayload):
    source_product_id: int
    source_id: int
    identity_key: str
    execution_id: int


def fetch_job_id(source_id: int) -> str:
    return f"fetch_{source_id}"


def extract_job_id(execution_id: int) -> str:
    return f"extract_{execution_id}"


def normalize_job_id(execution_id: int) -> str:
    return f"normalize_{execution_id}"


def write_job_id(execution_id: int) -> str:
    return f"write_{execution_id}"


def alert_job_id(execution_id: int, product_id: str, retailer_id: int) -> str:
    return f"alert_{execution_id}_{product_id}_{retailer_id}"


def notify_job_id(alert_id: int, claim_key: str) -> str:
    return f"notify_{alert_id}_{claim_key}"


def resolve_job_id(source_product_id: int) -> str:
    return f"resolve_{source_product_id}"
