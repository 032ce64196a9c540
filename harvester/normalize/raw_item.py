"""Raw item boundary types and per-item normalization results."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


def _as_text(value: Any) -> Any:
    """Render numeric identifiers (e.g. a JSON sku of 12345) as text."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return value


class ItemValidationError(ValueError):
    """Raised when a raw item cannot become a product."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class RawItem(BaseModel):
    """
    Loosely-typed record produced by an extractor or feed parser.

    ``kind`` records where the record came from. Unknown fields are kept so
    nothing an upstream sent is lost before validation.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    kind: Literal["feed", "scraped", "json"] = "scraped"
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "productName"))
    title: Optional[str] = None
    price: Optional[Union[float, str]] = None
    price_text: Optional[str] = Field(default=None, validation_alias=AliasChoices("priceText", "price_text"))
    url: Optional[str] = None
    link: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("imageUrl", "image_url", "image")
    )
    upc: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("upc", "UPC", "gtin", "gtin12", "gtin13")
    )
    sku: Optional[str] = None
    in_stock: Any = Field(default=None, validation_alias=AliasChoices("inStock", "in_stock"))

    @field_validator("upc", "sku", "name", "title", "description", mode="before")
    @classmethod
    def _scalar_text(cls, value: Any) -> Any:
        return _as_text(value)

    @field_validator("brand", mode="before")
    @classmethod
    def _brand_name(cls, value: Any) -> Any:
        # schema.org style {"@type": "Brand", "name": "Federal"}
        if isinstance(value, dict):
            value = value.get("name")
        return _as_text(value)

    @field_validator("image_url", mode="before")
    @classmethod
    def _first_image(cls, value: Any) -> Any:
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = value.get("url")
        return value

    @classmethod
    def parse(cls, data: Any) -> "RawItem":
        """
        Validate an untyped record.

        Raises:
            ItemValidationError: If the record is not an object or a field has the wrong shape
        """
        if not isinstance(data, dict):
            raise ItemValidationError("not_an_object", f"Expected an object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise ItemValidationError("invalid_shape", f"Invalid fields: {fields}") from e


class NormalizedProduct(BaseModel):
    """Canonical product/price record handed to the writer."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str
    name: str
    description: Optional[str] = None
    category: str = "General"
    brand: Optional[str] = None
    image_url: Optional[str] = None
    price: Decimal
    currency: str = "USD"
    url: str
    in_stock: bool = True
    retailer_name: str
    retailer_website: str
    upc: Optional[str] = None
    caliber: Optional[str] = None
    grain_weight: Optional[float] = None
    case_material: Optional[str] = None
    purpose: Optional[str] = None
    round_count: Optional[int] = None
    load_type: Optional[str] = None


@dataclass
class Normalized:
    index: int
    product: NormalizedProduct


@dataclass
class Skipped:
    index: int
    reason: str
    message: str


NormalizeResult = Union[Normalized, Skipped]
