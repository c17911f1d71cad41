"""
Checkout and payment schemas.

This module defines Pydantic schemas for starting a checkout (hosted Stripe
session or immediate cash-on-delivery order), verifying a returned session
and acknowledging webhooks.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from storefront.schemas.orders import OrderResponse
from storefront.services.payments.metadata import ShippingAddress


class CheckoutItemRequest(BaseModel):
    """Product and quantity requested at checkout."""

    product_id: UUID = Field(..., description="Product identifier")
    quantity: int = Field(1, description="Requested units, at least one")

    @field_validator("quantity", mode="before")
    @classmethod
    def clamp_quantity(cls, v: Any) -> int:
        """Treat missing, zero or negative quantities as one unit."""
        try:
            return max(1, int(v or 1))
        except (TypeError, ValueError) as e:
            raise ValueError("Quantity must be an integer") from e


class CheckoutRequest(BaseModel):
    """Request schema for starting a checkout."""

    items: list[CheckoutItemRequest] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Products to purchase",
    )
    coupon_code: Optional[str] = Field(
        None,
        max_length=20,
        description="Coupon code to apply",
    )
    shipping_address: ShippingAddress = Field(
        default_factory=ShippingAddress,
        description="Delivery address",
    )
    customer_email: Optional[str] = Field(
        None,
        max_length=255,
        description="Receipt address for guest checkout",
    )

    @field_validator("coupon_code")
    @classmethod
    def normalize_coupon_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @field_validator("customer_email")
    @classmethod
    def validate_email_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate email format."""
        if v is None:
            return None
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.strip().lower()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {"product_id": "123e4567-e89b-12d3-a456-426614174000", "quantity": 2}
                    ],
                    "coupon_code": "SAVE10",
                    "shipping_address": {
                        "line1": "1 Main St",
                        "city": "Austin",
                        "state": "TX",
                        "zip": "78701",
                    },
                }
            ]
        }
    }


class CheckoutSessionResponse(BaseModel):
    """
    Response for a checkout request.

    Carries the hosted payment page for card payments, or the created
    order when the cart total is zero.
    """

    session_id: Optional[str] = Field(None, description="Stripe Checkout session id")
    url: Optional[str] = Field(None, description="Hosted payment page URL")
    total: Decimal = Field(..., description="Amount to be charged")
    order: Optional[OrderResponse] = Field(
        None,
        description="Order created immediately for zero-total carts",
    )


class VerifySessionRequest(BaseModel):
    """Request schema for verifying a returned Checkout session."""

    session_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Stripe Checkout session id from the success redirect",
    )

    @field_validator("session_id")
    @classmethod
    def strip_session_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Session id is required")
        return v


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe."""

    received: bool = True
    order_id: Optional[UUID] = Field(None, serialization_alias="orderId")
