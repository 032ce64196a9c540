"""Affiliate feed parser base: format detection and field aliasing."""

import csv
import io
import json
import logging
from abc import ABC
from typing import Any, Optional
from xml.etree import ElementTree as ET

from harvester.errors import PermanentJobError

logger = logging.getLogger(__name__)

IN_STOCK_VALUES = {"true", "yes", "in stock", "available", "1", "y", "instock", "in_stock"}


class FeedParseError(PermanentJobError, ValueError):
    """Raised when feed content cannot be parsed in any supported format."""

    pass


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def detect_format(content: str) -> str:
    stripped = content.lstrip()
    if stripped.startswith("<"):
        return "xml"
    if stripped.startswith("[") or stripped.startswith("{"):
        return "json"
    return "csv"


def parse_stock_status(value: Any) -> bool:
    """Feeds that omit stock status are treated as in stock."""
    if value is None or value == "":
        return True
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    return str(value).strip().lower() in IN_STOCK_VALUES


class FeedParser(ABC):
    """
    Base parser for affiliate network product feeds.

    Subclasses declare ``FIELD_ALIASES``: for each raw-item field, the
    network's column/element names in priority order. The base handles
    CSV (comma, tab or pipe delimited), XML and JSON payloads.
    """

    network: str = ""
    FIELD_ALIASES: dict[str, tuple[str, ...]] = {}
    XML_RECORD_TAGS: tuple[str, ...] = ("product", "item")
    JSON_LIST_KEYS: tuple[str, ...] = ("products", "items")

    def parse(self, content: str) -> list[dict[str, Any]]:
        """Parse feed content into raw item dicts."""
        fmt = detect_format(content)
        try:
            if fmt == "xml":
                records = self.read_xml(content)
            elif fmt == "json":
                records = self.read_json(content)
            else:
                records = self.read_csv(content)
        except (ET.ParseError, json.JSONDecodeError, csv.Error) as e:
            raise FeedParseError(f"{self.network}: invalid {fmt} feed: {e}") from e

        items = [self.map_record(r) for r in records]
        logger.debug(f"{self.network}: parsed {len(items)} {fmt} records")
        return items

    def read_csv(self, content: str) -> list[dict[str, Any]]:
        header = content.lstrip("\ufeff").split("\n", 1)[0]
        if "|" in header:
            delimiter = "|"
        elif "\t" in header:
            delimiter = "\t"
        else:
            delimiter = ","
        reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")), delimiter=delimiter)
        return [
            {k.strip(): v for k, v in row.items() if k is not None}
            for row in reader
            if any((v or "").strip() for v in row.values() if isinstance(v, str))
        ]

    def read_xml(self, content: str) -> list[dict[str, Any]]:
        root = ET.fromstring(content)
        tags = {t.lower() for t in self.XML_RECORD_TAGS}
        if _local(root.tag).lower() in tags:
            elements = [root]
        else:
            elements = [el for el in root.iter() if _local(el.tag).lower() in tags]

        records = []
        for el in elements:
            record: dict[str, Any] = {_local(k): v for k, v in el.attrib.items()}
            for child in el:
                record[_local(child.tag)] = (child.text or "").strip()
            records.append(record)
        return records

    def read_json(self, content: str) -> list[dict[str, Any]]:
        data = json.loads(content)
        if isinstance(data, dict):
            for key in self.JSON_LIST_KEYS:
                if isinstance(data.get(key), list):
                    data = data[key]
                    break
            else:
                data = []
        return [r for r in data if isinstance(r, dict)]

    def first(self, record: dict[str, Any], field: str) -> Optional[Any]:
        """First non-empty value among the field's aliases."""
        for key in self.FIELD_ALIASES.get(field, ()):
            value = record.get(key)
            if value not in (None, ""):
                return value
        return None

    def map_record(self, record: dict[str, Any]) -> dict[str, Any]:
        price = self.first(record, "price")
        return {
            "kind": "feed",
            "retailer": self.first(record, "retailer") or "",
            "name": self.first(record, "name") or "",
            "price": price if isinstance(price, (int, float)) else (str(price) if price is not None else None),
            "inStock": parse_stock_status(self.first(record, "in_stock")),
            "url": self.first(record, "url") or "",
            "upc": _as_str(self.first(record, "upc")),
            "sku": _as_str(self.first(record, "sku")),
            "category": self.first(record, "category"),
            "brand": self.first(record, "brand"),
            "imageUrl": self.first(record, "image_url"),
            "description": self.first(record, "description"),
        }


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
