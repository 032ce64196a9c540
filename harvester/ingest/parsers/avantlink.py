"""AvantLink datafeed parser."""

from harvester.ingest.parsers.base import FeedParser


class AvantLinkParser(FeedParser):
    network = "AVANTLINK"

    XML_RECORD_TAGS = ("Product", "item")
    JSON_LIST_KEYS = ("Products", "products", "items")

    FIELD_ALIASES = {
        "retailer": ("Merchant_Name", "Merchant Name", "merchant"),
        "name": ("Product_Name", "Product Name", "name"),
        "price": ("Sale_Price", "Sale Price", "Retail_Price", "Retail Price", "price"),
        "in_stock": ("Stock_Status", "Availability", "In_Stock", "inStock"),
        "url": ("Buy_Link", "Buy Link", "Product_URL", "url"),
        "upc": ("UPC", "GTIN", "upc"),
        "sku": ("SKU", "Manufacturer_Part_Number", "sku"),
        "category": ("Category_Name", "Subcategory_Name", "category"),
        "brand": ("Brand_Name", "Brand Name", "Manufacturer", "brand"),
        "image_url": ("Large_Image", "Medium_Image", "Thumbnail_Image", "imageUrl"),
        "description": ("Short_Description", "Long_Description", "description"),
    }
