"""Extractor contract."""

import logging
from abc import ABC, abstractmethod
from typing import Any

from harvester.db.models import Source

logger = logging.getLogger(__name__)


class Extractor(ABC):
    """Turns the raw content of one fetch into raw item records."""

    kind: str = "scraped"

    @abstractmethod
    def extract(self, content: str, source: Source) -> list[Any]:
        """
        Extract raw item records from fetched content.

        Records are not validated here; the Normalizer validates each one
        and logs the ones it skips. Implementations return an empty list for
        content without items and raise only when the content itself is
        unusable.
        """
        ...

    def tag(self, record: Any) -> Any:
        """Drop empty fields and tag a record with this extractor's kind."""
        if not isinstance(record, dict):
            return record
        tagged = {k: v for k, v in record.items() if v is not None}
        tagged["kind"] = self.kind
        return tagged

    def tag_all(self, records: list[Any]) -> list[Any]:
        return [self.tag(record) for record in records]
