"""Extract items from HTML pages: JSON-LD Product data or configured CSS selectors."""

import json
import logging
from typing import Any, Optional

from selectolax.parser import HTMLParser, Node

from harvester.db.models import Source
from harvester.extract.base import Extractor

logger = logging.getLogger(__name__)

SELECTOR_FIELDS = ("name", "price", "url", "image", "brand", "upc", "sku", "stock")


def extract_json_ld(tree: HTMLParser) -> list[Any]:
    """Parsed JSON-LD blocks; malformed blocks are skipped."""
    results = []
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            results.append(json.loads(script.text()))
        except json.JSONDecodeError:
            continue
    return results


def _types(obj: dict) -> list[str]:
    t = obj.get("@type", "")
    return t if isinstance(t, list) else [t]


def find_products(obj: Any) -> list[dict[str, Any]]:
    """schema.org Product objects, including those nested in @graph and ItemList."""
    if isinstance(obj, list):
        return [p for o in obj for p in find_products(o)]
    if not isinstance(obj, dict):
        return []
    if "Product" in _types(obj):
        return [obj]
    products = []
    if "@graph" in obj:
        products.extend(find_products(obj["@graph"]))
    if "ItemList" in _types(obj):
        for element in obj.get("itemListElement", []):
            if isinstance(element, dict):
                products.extend(find_products(element.get("item", element)))
    return products


def _first_offer(product: dict[str, Any]) -> dict[str, Any]:
    offers = product.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if isinstance(offers, dict) and "AggregateOffer" in _types(offers) and "price" not in offers:
        return {**offers, "price": offers.get("lowPrice")}
    return offers if isinstance(offers, dict) else {}


def _brand(product: dict[str, Any]) -> Optional[str]:
    brand = product.get("brand")
    if isinstance(brand, dict):
        return brand.get("name")
    return brand if isinstance(brand, str) else None


def _image(product: dict[str, Any]) -> Optional[str]:
    image = product.get("image")
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, dict):
        image = image.get("url")
    return image if isinstance(image, str) else None


def product_record(product: dict[str, Any]) -> dict[str, Any]:
    """Map a JSON-LD Product to raw item fields."""
    offer = _first_offer(product)
    availability = offer.get("availability")
    if isinstance(availability, str):
        # "https://schema.org/OutOfStock" -> "outofstock"
        availability = availability.rsplit("/", 1)[-1].lower()
    price = offer.get("price")
    return {
        "name": product.get("name"),
        "description": product.get("description"),
        "price": price if isinstance(price, (int, float)) else (str(price) if price is not None else None),
        "currency": offer.get("priceCurrency"),
        "url": offer.get("url") or product.get("url"),
        "brand": _brand(product),
        "imageUrl": _image(product),
        "upc": product.get("gtin12") or product.get("gtin13") or product.get("gtin"),
        "sku": product.get("sku"),
        "inStock": availability,
    }


def _node_value(node: Optional[Node], field: str) -> Optional[str]:
    if node is None:
        return None
    if field == "url":
        return node.attributes.get("href") or node.text(strip=True)
    if field == "image":
        return node.attributes.get("src") or node.attributes.get("data-src")
    return node.text(strip=True) or None


class HtmlExtractor(Extractor):
    """
    HTML product extraction.

    When ``scrape_config`` carries ``selectors`` (an ``item`` container plus
    per-field selectors relative to it) those are used; otherwise products
    are read from JSON-LD blocks.
    """

    kind = "scraped"

    def extract(self, content: str, source: Source) -> list[Any]:
        tree = HTMLParser(content)
        selectors = (source.scrape_config or {}).get("selectors")
        if selectors and selectors.get("item"):
            records = self.extract_with_selectors(tree, selectors)
        else:
            records = [product_record(p) for p in find_products(extract_json_ld(tree))]
        logger.debug(f"Source {source.id}: {len(records)} HTML records")
        return self.tag_all(records)

    def extract_with_selectors(self, tree: HTMLParser, selectors: dict[str, str]) -> list[dict[str, Any]]:
        records = []
        for container in tree.css(selectors["item"]):
            record: dict[str, Any] = {}
            for field in SELECTOR_FIELDS:
                selector = selectors.get(field)
                if selector:
                    record[field] = _node_value(container.css_first(selector), field)
            if "image" in record:
                record["imageUrl"] = record.pop("image")
            if "stock" in record:
                record["inStock"] = record.pop("stock")
            if record.get("price") is not None:
                record["priceText"] = record.pop("price")
            records.append(record)
        return records
