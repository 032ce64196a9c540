"""ShareASale datafeed parser (pipe-delimited CSV, XML or JSON)."""

from harvester.ingest.parsers.base import FeedParser


class ShareASaleParser(FeedParser):
    network = "SHAREASALE"

    FIELD_ALIASES = {
        "retailer": ("Merchant", "Merchant Name", "merchantname", "merchant", "merchantName"),
        "name": ("Product Name", "productname", "productName", "name", "title", "Name"),
        "price": ("Price", "price", "retailprice", "Retail Price", "retailPrice", "currentPrice"),
        "in_stock": ("Stock Status", "stockstatus", "stockStatus", "instock", "inStock", "StockStatus"),
        "url": ("Product URL", "producturl", "productUrl", "custom1", "URL", "url", "link"),
        "upc": ("UPC", "upccode", "UPC Code", "upc", "upcCode", "ean"),
        "sku": ("SKU", "sku", "Merchant Product ID", "merchantProductId", "merchantproductid"),
        "category": ("Category", "category", "subcategory"),
        "brand": ("Brand", "brand", "manufacturer"),
        "image_url": ("Thumbnail", "thumbnail", "Image URL", "imageurl", "imageUrl", "image"),
        "description": (
            "Description",
            "description",
            "Short Description",
            "shortdescription",
            "shortDescription",
            "productDescription",
        ),
    }
