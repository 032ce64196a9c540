"""Impact catalog export parser."""

from harvester.ingest.parsers.base import FeedParser


class ImpactParser(FeedParser):
    network = "IMPACT"

    XML_RECORD_TAGS = ("Item", "CatalogItem", "product")
    JSON_LIST_KEYS = ("Items", "CatalogItems", "products", "items")

    FIELD_ALIASES = {
        "retailer": ("CampaignName", "Manufacturer", "AdvertiserName"),
        "name": ("Name", "ProductName", "Title", "name"),
        "price": ("CurrentPrice", "Price", "SalePrice", "OriginalPrice", "price"),
        "in_stock": ("StockAvailability", "Availability", "InStock", "inStock"),
        "url": ("Url", "ProductUrl", "TrackingLink", "url"),
        "upc": ("Gtin", "GTIN", "Upc", "UPC", "upc"),
        "sku": ("CatalogItemId", "Sku", "SKU", "Mpn"),
        "category": ("Category", "SubCategory", "ProductType"),
        "brand": ("Manufacturer", "Brand", "brand"),
        "image_url": ("ImageUrl", "ImageURL", "imageUrl"),
        "description": ("Description", "ShortDescription", "description"),
    }
