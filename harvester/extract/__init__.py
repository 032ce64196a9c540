"""Extractor registry keyed by source type."""

from harvester.db.models import SourceType
from harvester.extract.base import Extractor
from harvester.extract.html import HtmlExtractor
from harvester.extract.json_items import JsonExtractor
from harvester.extract.rss import RssExtractor

EXTRACTORS: dict[str, type[Extractor]] = {
    SourceType.JSON.value: JsonExtractor,
    SourceType.RSS.value: RssExtractor,
    SourceType.HTML.value: HtmlExtractor,
    SourceType.JS_RENDERED.value: HtmlExtractor,
}


def get_extractor(source_type: str, content: str = "") -> Extractor:
    """
    Extractor for a source type.

    FEED sources without an affiliate network are sniffed: XML goes to the
    RSS extractor, anything else to the JSON extractor.
    """
    if source_type == SourceType.FEED.value:
        return RssExtractor() if content.lstrip().startswith("<") else JsonExtractor()
    return EXTRACTORS.get(source_type, HtmlExtractor)()


__all__ = ["Extractor", "EXTRACTORS", "get_extractor"]
