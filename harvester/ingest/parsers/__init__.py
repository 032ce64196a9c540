"""Affiliate feed parsers by network."""

from harvester.errors import UnsupportedAffiliateNetworkError
from harvester.ingest.parsers.avantlink import AvantLinkParser
from harvester.ingest.parsers.base import FeedParseError, FeedParser
from harvester.ingest.parsers.impact import ImpactParser
from harvester.ingest.parsers.shareasale import ShareASaleParser

PARSERS: dict[str, type[FeedParser]] = {
    "IMPACT": ImpactParser,
    "AVANTLINK": AvantLinkParser,
    "SHAREASALE": ShareASaleParser,
}


def get_parser(network: str | None) -> FeedParser:
    """
    Parser for an affiliate network.

    Raises:
        UnsupportedAffiliateNetworkError: If the network has no parser
    """
    parser_cls = PARSERS.get((network or "").upper())
    if parser_cls is None:
        raise UnsupportedAffiliateNetworkError(network)
    return parser_cls()


__all__ = ["FeedParseError", "FeedParser", "PARSERS", "get_parser"]
