# repricer/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from bson.decimal128 import Decimal128
from pydantic import BaseModel, ConfigDict, Field, field_validator

PACK_DIVIDER = "__PK__"


class ScraperState(str, Enum):
    IDLE = "Idle"
    PENDING = "Pending"
    RUNNING = "Running"
    DONE = "Done"


def to_decimal(value):
    """Convert a stored price (Decimal128, float, int or str) to Decimal."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    # str() first so 12.5 becomes Decimal("12.5"), not its binary expansion
    return Decimal(str(value))


def to_decimal128(value):
    return Decimal128(value) if value is not None else None


class RetailerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    retailer_id: str = Field(..., alias="_id")
    name: str = ""
    domain: str = ""
    logo_url: str = Field("", alias="logo")
    search_link_template: str = Field("", alias="linkToSearch")
    price_selector: Optional[str] = Field(None, alias="priceSelector")

    @field_validator("retailer_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v)


class RetailerLink(BaseModel):
    """Scheduling state of one (retailer, pack) combination of a product."""

    model_config = ConfigDict(populate_by_name=True)

    retailer_id: str = Field(..., alias="retailerId")
    pack_id: int = Field(1, alias="packId")
    url_parameters: Optional[str] = Field(None, alias="urlParameters")
    latest_price: Optional[Decimal] = Field(None, alias="latestPrice")
    retailer_would_sell: Optional[bool] = Field(None, alias="retailerWouldSell")
    last_attempted_at: Optional[datetime] = Field(None, alias="lastScraped")
    had_error_on_last_attempt: bool = Field(False, alias="errorOnLastScrap")

    @field_validator("pack_id", mode="before")
    @classmethod
    def _default_pack(cls, v):
        return v or 1

    @field_validator("latest_price", mode="before")
    @classmethod
    def _decode_price(cls, v):
        try:
            return to_decimal(v)
        except (InvalidOperation, TypeError) as e:
            raise ValueError(f"not a price: {v!r}") from e

    @field_validator("last_attempted_at", mode="after")
    @classmethod
    def _assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("had_error_on_last_attempt", mode="before")
    @classmethod
    def _default_error(cls, v):
        return bool(v)

    @property
    def combo_key(self):
        return f"{self.retailer_id}{PACK_DIVIDER}{self.pack_id}"

    def to_document(self):
        """
        Encode the link the way it is stored inside a product document.

        Returns:
            dict: Field-for-field persisted form. Prices become Decimal128,
                timestamps stay native datetimes. ``latestPrice``,
                ``lastScraped`` and ``retailerWouldSell`` are only written
                when known.
        """
        doc = {
            "retailerId": self.retailer_id,
            "urlParameters": self.url_parameters,
            "packId": self.pack_id,
            "errorOnLastScrap": self.had_error_on_last_attempt,
        }
        if self.latest_price is not None:
            doc["latestPrice"] = to_decimal128(self.latest_price)
        if self.last_attempted_at is not None:
            doc["lastScraped"] = self.last_attempted_at
        if self.retailer_would_sell is not None:
            doc["retailerWouldSell"] = self.retailer_would_sell
        return doc


class ProductItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # kept as stored (str or ObjectId) so writes hit the same document
    source_id: Any = Field(None, alias="_id")
    name: str = ""
    image_url: str = Field("", alias="image")
    retailers: list[RetailerLink] = Field(default_factory=list)
    dirty: bool = Field(False, exclude=True)

    @field_validator("name", "image_url", mode="before")
    @classmethod
    def _blank_if_missing(cls, v):
        return v or ""

    @field_validator("retailers", mode="before")
    @classmethod
    def _no_retailers(cls, v):
        return v or []

    @property
    def transient(self):
        return self.source_id is None

    def to_document(self):
        return {
            "name": self.name,
            "image": self.image_url,
            "retailers": [link.to_document() for link in self.retailers],
        }


@dataclass
class ProcessedItem:
    """Outcome of running one product through the item processor."""

    item: ProductItem
    attempted: list[str] = field(default_factory=list)
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def dirty(self):
        return self.item.dirty
