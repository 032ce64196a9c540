"""Extract items from JSON API responses."""

import json
import logging
from typing import Any

from harvester.db.models import Source
from harvester.errors import ContentParseError
from harvester.extract.base import Extractor

logger = logging.getLogger(__name__)

LIST_KEYS = ("products", "items", "data", "results")


class JsonExtractor(Extractor):
    """Items from a top-level array or a common list key."""

    kind = "json"

    def extract(self, content: str, source: Source) -> list[Any]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ContentParseError(f"Source {source.id}: content is not valid JSON: {e}") from e

        if isinstance(data, dict):
            for key in LIST_KEYS:
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
            else:
                # A single product object
                data = [data] if ("name" in data or "title" in data) else []

        if not isinstance(data, list):
            return []
        return self.tag_all(data)
