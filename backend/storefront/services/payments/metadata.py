"""
Order intent codec for Stripe Checkout session metadata.

A card order does not exist until payment is confirmed, so everything
needed to create it travels with the Checkout session as metadata. Stripe
limits metadata to 50 keys, 40 character keys and 500 character string
values; this module owns the versioned layout that fits those limits:

- ``metadataVersion``: layout version, currently ``"1"``
- ``userId``: purchasing user id, empty for guests
- ``itemCount``: number of item lines
- ``items``, ``items2``, ...: compact JSON list of ``{p, t, pr, q, s}``
  (product id, title cut to 50 characters, unit price, quantity, line
  subtotal) split into 500 character chunks, ``itemsChunks`` holding the
  chunk count
- ``shippingLabel``/``Line1``/``Line2``/``City``/``State``/``Zip``/``Country``:
  address fields, lines cut to 200 characters
- ``couponCode``/``Type``/``Value``/``Discount``: coupon snapshot or ``""``
- ``subtotal``, ``productDiscount``, ``discount``, ``shippingCharges``,
  ``total``: amounts without trailing zeros
"""

import json
import uuid
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from storefront.core.money import ZERO, format_amount, to_decimal

METADATA_VERSION = "1"

MAX_KEYS = 50
MAX_KEY_LENGTH = 40
MAX_VALUE_LENGTH = 500

TITLE_MAX_LENGTH = 50
ADDRESS_LINE_MAX_LENGTH = 200
ADDRESS_FIELD_MAX_LENGTH = 100

DEFAULT_COUNTRY = "US"
DEFAULT_ADDRESS_LABEL = "Home"

_ADDRESS_KEYS = {
    "label": "shippingLabel",
    "line1": "shippingLine1",
    "line2": "shippingLine2",
    "city": "shippingCity",
    "state": "shippingState",
    "zip": "shippingZip",
    "country": "shippingCountry",
}

_AMOUNT_KEYS = {
    "subtotal": "subtotal",
    "product_discount": "productDiscount",
    "discount": "discount",
    "shipping_charges": "shippingCharges",
    "total": "total",
}


class OrderIntentError(Exception):
    """Base exception for order intent encoding errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class InvalidOrderIntent(OrderIntentError):
    """Raised when session metadata cannot be decoded into an order intent."""

    pass


class OrderIntentTooLarge(OrderIntentError):
    """Raised when an order intent does not fit the metadata limits."""

    pass


def _truncate(value: Optional[str], limit: int) -> str:
    return (value or "").strip()[:limit]


class IntentItem(BaseModel):
    """Purchased product line snapshot."""

    product_id: str = Field(..., min_length=1)
    title: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: Decimal = Field(..., ge=0)

    @field_validator("title", mode="before")
    @classmethod
    def truncate_title(cls, v: Any) -> str:
        return _truncate(str(v or ""), TITLE_MAX_LENGTH)

    @field_validator("price", "subtotal", mode="before")
    @classmethod
    def round_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    def to_compact(self) -> dict[str, Any]:
        return {
            "p": self.product_id,
            "t": self.title,
            "pr": format_amount(self.price),
            "q": self.quantity,
            "s": format_amount(self.subtotal),
        }

    @classmethod
    def from_compact(cls, data: Mapping[str, Any]) -> "IntentItem":
        return cls(
            product_id=str(data["p"]),
            title=data.get("t", ""),
            price=data["pr"],
            quantity=int(data["q"]),
            subtotal=data["s"],
        )


class ShippingAddress(BaseModel):
    """Delivery address carried with the order intent."""

    label: str = DEFAULT_ADDRESS_LABEL
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = DEFAULT_COUNTRY

    @field_validator("line1", "line2", mode="before")
    @classmethod
    def truncate_line(cls, v: Any) -> str:
        return _truncate(v, ADDRESS_LINE_MAX_LENGTH)

    @field_validator("city", "state", "zip", mode="before")
    @classmethod
    def truncate_field(cls, v: Any) -> str:
        return _truncate(v, ADDRESS_FIELD_MAX_LENGTH)

    @field_validator("label", mode="before")
    @classmethod
    def default_label(cls, v: Any) -> str:
        return _truncate(v, ADDRESS_FIELD_MAX_LENGTH) or DEFAULT_ADDRESS_LABEL

    @field_validator("country", mode="before")
    @classmethod
    def default_country(cls, v: Any) -> str:
        return _truncate(v, ADDRESS_FIELD_MAX_LENGTH).upper() or DEFAULT_COUNTRY


class CouponSnapshot(BaseModel):
    """Coupon state at the time of checkout."""

    code: str
    type: str
    value: Decimal
    discount: Decimal

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v: Any) -> str:
        return str(v).strip().upper()

    @field_validator("value", "discount", mode="before")
    @classmethod
    def round_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)


class OrderIntent(BaseModel):
    """
    Not yet persisted order, as priced at checkout.

    Invariants enforced on construction: at least one item, discount within
    subtotal, and ``total == max(0, subtotal - discount + shipping_charges)``.
    """

    user_id: Optional[str] = None
    items: list[IntentItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    coupon: Optional[CouponSnapshot] = None
    subtotal: Decimal
    product_discount: Decimal = ZERO
    discount: Decimal = ZERO
    shipping_charges: Decimal = ZERO
    total: Decimal

    @field_validator(
        "subtotal", "product_discount", "discount", "shipping_charges", "total",
        mode="before",
    )
    @classmethod
    def round_amount(cls, v: Any) -> Decimal:
        return to_decimal(v)

    @field_validator("user_id", mode="before")
    @classmethod
    def normalize_user_id(cls, v: Any) -> Optional[str]:
        return str(uuid.UUID(str(v))) if v else None

    @model_validator(mode="after")
    def check_totals(self) -> "OrderIntent":
        if self.discount > self.subtotal:
            raise ValueError("discount exceeds subtotal")
        expected = max(ZERO, self.subtotal - self.discount + self.shipping_charges)
        if self.total != expected:
            raise ValueError(f"total {self.total} does not match computed {expected}")
        return self

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_metadata(self) -> dict[str, str]:
        """
        Encode the intent as a flat Stripe metadata map.

        Raises:
            OrderIntentTooLarge: If the items do not fit the key budget
        """
        metadata: dict[str, str] = {
            "metadataVersion": METADATA_VERSION,
            "userId": self.user_id or "",
            "itemCount": str(len(self.items)),
        }

        for field_name, key in _ADDRESS_KEYS.items():
            metadata[key] = getattr(self.shipping_address, field_name)

        coupon = self.coupon
        metadata["couponCode"] = coupon.code if coupon else ""
        metadata["couponType"] = coupon.type if coupon else ""
        metadata["couponValue"] = format_amount(coupon.value) if coupon else ""
        metadata["couponDiscount"] = format_amount(coupon.discount) if coupon else ""

        for field_name, key in _AMOUNT_KEYS.items():
            metadata[key] = format_amount(getattr(self, field_name))

        items_json = json.dumps(
            [item.to_compact() for item in self.items],
            separators=(",", ":"),
            ensure_ascii=False,
        )
        chunks = [
            items_json[i : i + MAX_VALUE_LENGTH]
            for i in range(0, len(items_json), MAX_VALUE_LENGTH)
        ]
        # itemsChunks itself takes one key
        if len(metadata) + len(chunks) + 1 > MAX_KEYS:
            raise OrderIntentTooLarge(
                "Too many items to encode in session metadata",
                item_count=len(self.items),
                chunk_count=len(chunks),
            )

        metadata["itemsChunks"] = str(len(chunks))
        for index, chunk in enumerate(chunks):
            metadata[_items_key(index)] = chunk

        return metadata

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "OrderIntent":
        """
        Decode an intent from Stripe session metadata.

        Raises:
            InvalidOrderIntent: If the metadata is missing, of an unknown
                version, or does not describe a valid order
        """
        if not metadata:
            raise InvalidOrderIntent("Session metadata is missing")

        version = metadata.get("metadataVersion")
        if version != METADATA_VERSION:
            raise InvalidOrderIntent(
                "Unsupported session metadata version", version=version
            )

        try:
            chunk_count = int(metadata.get("itemsChunks") or 1)
            items_json = "".join(
                metadata.get(_items_key(index)) or "" for index in range(chunk_count)
            )
            if not items_json:
                raise InvalidOrderIntent("Session metadata has no items")
            raw_items = json.loads(items_json)
            if not isinstance(raw_items, list):
                raise InvalidOrderIntent("Session metadata items are not a list")

            coupon = None
            if metadata.get("couponCode"):
                coupon = CouponSnapshot(
                    code=metadata["couponCode"],
                    type=metadata.get("couponType") or "flat",
                    value=metadata.get("couponValue") or "0",
                    discount=metadata.get("couponDiscount") or "0",
                )

            return cls(
                user_id=metadata.get("userId"),
                items=[IntentItem.from_compact(item) for item in raw_items],
                shipping_address=ShippingAddress(
                    **{
                        field_name: metadata.get(key) or ""
                        for field_name, key in _ADDRESS_KEYS.items()
                    }
                ),
                coupon=coupon,
                **{
                    field_name: metadata.get(key) or "0"
                    for field_name, key in _AMOUNT_KEYS.items()
                },
            )
        except InvalidOrderIntent:
            raise
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise InvalidOrderIntent(
                "Session metadata does not describe a valid order",
                error=str(e),
            ) from e


def _items_key(index: int) -> str:
    return "items" if index == 0 else f"items{index + 1}"
