"""
Order Pydantic schemas for API request/response validation.

This module defines the order read model returned to customers and
administrators together with the request bodies for cancellation, returns,
status changes, refunds and statistics.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.database.models.order import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ReturnStatus,
)


class OrderItemResponse(BaseModel):
    """Purchased product snapshot."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    title: str
    price: Decimal
    quantity: int
    subtotal: Decimal


class RefundResponse(BaseModel):
    """Recorded refund."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Decimal
    reason: Optional[str] = None
    method: str
    status: RefundStatus
    stripe_refund_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class StatusHistoryResponse(BaseModel):
    """Status change audit entry."""

    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class CouponResponse(BaseModel):
    code: str
    type: Optional[str] = None
    value: Optional[Decimal] = None
    discount: Optional[Decimal] = None


class ReturnResponse(BaseModel):
    """Return request state."""

    status: ReturnStatus
    reason: Optional[str] = None
    items: Optional[list[dict[str, Any]]] = None
    requested_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    """Order read model."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    user_id: Optional[UUID] = None
    customer_email: Optional[str] = None
    currency: str
    status: OrderStatus

    items: list[OrderItemResponse] = Field(default_factory=list)
    subtotal: Decimal
    product_discount: Decimal
    discount: Decimal
    shipping_charges: Decimal
    total: Decimal
    coupon: Optional[CouponResponse] = None

    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_session_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_failure_reason: Optional[str] = None

    shipping_address: dict[str, Any] = Field(default_factory=dict)
    tracking_number: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    return_request: Optional[ReturnResponse] = None
    refunds: list[RefundResponse] = Field(default_factory=list)
    refunded_total: Decimal = Decimal("0")
    status_history: list[StatusHistoryResponse] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Any) -> "OrderResponse":
        """Build the response from an Order, folding coupon and return columns."""
        response = cls.model_validate(order)
        if order.coupon_code:
            response.coupon = CouponResponse(
                code=order.coupon_code,
                type=order.coupon_type,
                value=order.coupon_value,
                discount=order.coupon_discount,
            )
        if order.return_status is not None:
            response.return_request = ReturnResponse(
                status=order.return_status,
                reason=order.return_reason,
                items=order.return_items,
                requested_at=order.return_requested_at,
                decided_at=order.return_decided_at,
                decided_by=order.return_decided_by,
                refunded_at=order.return_refunded_at,
                refund_amount=order.return_refund_amount,
                notes=order.return_notes,
            )
        return response


class OrderListResponse(BaseModel):
    """Paginated order list."""

    items: list[OrderResponse]
    total: int
    page: int
    limit: int
    pages: int


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Cancellation reason")


class BankDetails(BaseModel):
    """US bank account for cash-on-delivery refunds."""

    model_config = ConfigDict(str_strip_whitespace=True)

    account_holder_name: str = Field(..., min_length=1, max_length=100)
    bank_name: str = Field(..., min_length=1, max_length=100)
    account_number: str = Field(..., min_length=4, max_length=17)
    routing_number: str = Field(..., description="9-digit ABA routing number")
    account_type: Literal["checking", "savings"]

    @field_validator("account_type", mode="before")
    @classmethod
    def normalize_account_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("account_number")
    @classmethod
    def validate_account_number(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("Account number must contain digits only")
        return v

    @field_validator("routing_number")
    @classmethod
    def validate_routing_number(cls, v: str) -> str:
        if len(v) != 9 or not v.isdigit():
            raise ValueError("Routing number must be exactly 9 digits")
        return v


class ReturnItemRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(1, ge=1)


class ReturnRequest(BaseModel):
    """Customer return request."""

    reason: str = Field(..., min_length=1, max_length=500)
    items: Optional[list[ReturnItemRequest]] = Field(
        None,
        description="Items to return, all items when omitted",
    )
    bank_details: Optional[BankDetails] = Field(
        None,
        description="Refund account, required for cash-on-delivery orders",
    )


class UpdateStatusRequest(BaseModel):
    """Administrator status change."""

    status: OrderStatus
    notes: Optional[str] = Field(None, max_length=1000)
    tracking_number: Optional[str] = Field(None, max_length=100)

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v: Any) -> Any:
        return OrderStatus.from_string(v) if isinstance(v, str) else v


class UpdatePaymentStatusRequest(BaseModel):
    status: PaymentStatus
    reason: Optional[str] = Field(None, max_length=500)


class ReturnDecisionRequest(BaseModel):
    """Administrator decision on a return request."""

    action: Literal["approve", "reject"]
    notes: Optional[str] = Field(None, max_length=1000)
    refund_amount: Optional[Decimal] = Field(None, gt=0)


class RefundRequest(BaseModel):
    """Administrator refund."""

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)
    method: Optional[str] = Field(
        None,
        max_length=20,
        description="Refund channel, defaults to the payment method",
    )


class MarkFailedRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class OrderStatsResponse(BaseModel):
    """Order statistics for a period."""

    period: Literal["7d", "30d", "90d"]
    since: datetime
    total_orders: int
    revenue: Decimal
    status_breakdown: dict[str, int]
