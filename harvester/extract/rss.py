"""Extract items from RSS 2.0 and Atom product feeds."""

import logging
import re
from typing import Any, Optional
from xml.etree import ElementTree as ET

from harvester.db.models import Source
from harvester.extract.base import Extractor

logger = logging.getLogger(__name__)

GOOGLE_NS = "http://base.google.com/ns/1.0"
ATOM_NS = "http://www.w3.org/2005/Atom"

# Paginated fetches concatenate documents
DOCUMENT_BOUNDARY = re.compile(r"(?=<\?xml)")


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _text(el: ET.Element, *names: str) -> Optional[str]:
    """First non-empty child text among local names (namespace-insensitive)."""
    wanted = set(names)
    for child in el:
        if _local(child.tag) in wanted and child.text and child.text.strip():
            return child.text.strip()
    return None


def _google(el: ET.Element, name: str) -> Optional[str]:
    child = el.find(f"{{{GOOGLE_NS}}}{name}")
    if child is not None and child.text and child.text.strip():
        return child.text.strip()
    return None


def _link(el: ET.Element) -> Optional[str]:
    for child in el:
        if _local(child.tag) != "link":
            continue
        if child.text and child.text.strip():
            return child.text.strip()
        href = child.attrib.get("href")
        if href and child.attrib.get("rel", "alternate") == "alternate":
            return href
    return None


class RssExtractor(Extractor):
    """
    RSS ``<item>`` and Atom ``<entry>`` records.

    Google Shopping (``g:``) fields take precedence over plain elements.
    """

    kind = "scraped"

    def extract(self, content: str, source: Source) -> list[Any]:
        records: list[dict[str, Any]] = []
        for document in self._documents(content):
            try:
                root = ET.fromstring(document)
            except ET.ParseError as e:
                logger.warning(f"Source {source.id}: skipping unparseable XML document: {e}")
                continue
            for el in root.iter():
                if _local(el.tag) in ("item", "entry"):
                    records.append(self._record(el))
        return self.tag_all(records)

    @staticmethod
    def _documents(content: str) -> list[str]:
        parts = [p.strip() for p in DOCUMENT_BOUNDARY.split(content)]
        return [p for p in parts if p]

    @staticmethod
    def _record(el: ET.Element) -> dict[str, Any]:
        price = _google(el, "sale_price") or _google(el, "price") or _text(el, "price")
        availability = _google(el, "availability") or _text(el, "availability")
        return {
            "title": _google(el, "title") or _text(el, "title"),
            "url": _google(el, "link") or _link(el),
            "description": _google(el, "description") or _text(el, "description", "summary", "content"),
            "price": price,
            "inStock": availability.replace("_", " ") if availability else None,
            "brand": _google(el, "brand"),
            "upc": _google(el, "gtin"),
            "sku": _google(el, "id") or _google(el, "mpn"),
            "imageUrl": _google(el, "image_link"),
        }
