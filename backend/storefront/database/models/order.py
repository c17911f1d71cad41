"""
Order aggregate models.

An order is created once per payment: by checkout for free and
cash-on-delivery orders, or by payment reconciliation for card payments.
Item and coupon data are snapshots taken at creation time so later catalog
or coupon edits never change historical orders. The payment session id
carries a unique constraint; it is the idempotency key shared by the
webhook and the session verifier. Orders are never deleted.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import BaseModel


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class OrderStatus(str, Enum):
    """
    Order status enumeration for tracking order lifecycle.

    Attributes:
        PENDING: Created but not yet confirmed
        CONFIRMED: Payment captured, or accepted for cash on delivery
        PROCESSING: Being prepared for shipment
        SHIPPED: Handed to the carrier
        DELIVERED: Received by the customer
        CANCELLED: Cancelled by the customer or an administrator
        RETURNED: Goods returned after delivery
        REFUNDED: Fully refunded
        FAILED: Payment or fulfilment failed
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"
    FAILED = "failed"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """
        Create OrderStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid order status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions)."""
        return self in (OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.FAILED)

    @property
    def can_user_cancel(self) -> bool:
        """Customers may only cancel before processing starts."""
        return self in (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class PaymentMethod(str, Enum):
    """How the order is paid."""

    STRIPE = "stripe"
    COD = "cod"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReturnStatus(str, Enum):
    """Return request status enumeration."""

    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    COMPLETED = "completed"


class RefundStatus(str, Enum):
    """Per-refund processing status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Order(BaseModel):
    """
    Order model for customer purchases and fulfilment tracking.

    Money invariant: ``total == max(0, subtotal - discount + shipping_charges)``
    where ``discount`` is the product discount plus the coupon discount and
    never exceeds ``subtotal``.

    Attributes:
        order_number: Human-readable unique order number
        user_id: Purchasing user, NULL for guest checkout
        customer_email: Address order emails are sent to
        subtotal: Merchandise total at list prices
        product_discount: Sum of per-product discounts
        discount: Product discount plus coupon discount
        shipping_charges: Shipping after free-shipping rules
        total: Amount charged
        coupon_*: Snapshot of the redeemed coupon
        payment_*: Payment method, provider identifiers and status
        status: Current lifecycle status
        shipping_address: Delivery address
        return_*: Return request state
    """

    __tablename__ = "orders"

    __table_args__ = (
        UniqueConstraint("payment_session_id", name="uq_orders_payment_session_id"),
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal_non_negative"),
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint("discount <= subtotal", name="ck_orders_discount_within_subtotal"),
        Index("ix_orders_user_status", "user_id", "status"),
        Index("ix_orders_status_created", "status", "created_at"),
        {"comment": "Customer orders"},
    )

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="User who placed the order",
    )

    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    # Money
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    product_discount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    discount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    shipping_charges: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Coupon snapshot
    coupon_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    coupon_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    coupon_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    coupon_discount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )

    # Payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod, name="payment_method", values_callable=_enum_values),
        nullable=False,
        default=PaymentMethod.STRIPE,
    )
    payment_session_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Provider checkout session id (idempotency key)",
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_failure_reason: Mapped[Optional[str]] = mapped_column(String(500))

    # Lifecycle
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name="order_status", values_callable=_enum_values),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processing_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processing_notes: Mapped[Optional[str]] = mapped_column(Text)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100))
    shipping_notes: Mapped[Optional[str]] = mapped_column(Text)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivery_notes: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500))
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(255))

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Delivery address",
    )

    # Returns
    return_status: Mapped[Optional[ReturnStatus]] = mapped_column(
        SQLEnum(ReturnStatus, name="return_status", values_callable=_enum_values),
        nullable=True,
    )
    return_reason: Mapped[Optional[str]] = mapped_column(String(500))
    return_items: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONB)
    return_bank_details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    return_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    return_decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    return_decided_by: Mapped[Optional[str]] = mapped_column(String(255))
    return_refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    return_refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    return_notes: Mapped[Optional[str]] = mapped_column(Text)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    refunds: Mapped[list["OrderRefund"]] = relationship(
        "OrderRefund",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderRefund.created_at",
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderStatusHistory.created_at",
    )

    @property
    def refunded_total(self) -> Decimal:
        """Sum of refunds that have not failed."""
        return sum(
            (Decimal(r.amount) for r in self.refunds if r.status != RefundStatus.FAILED),
            Decimal("0"),
        )

    def return_window_open(self, now: datetime, window_days: int) -> bool:
        """Check whether a return can still be requested at ``now``."""
        if self.delivered_at is None:
            return False
        return now <= self.delivered_at + timedelta(days=window_days)


class OrderItem(BaseModel):
    """Snapshot of a purchased product line."""

    __tablename__ = "order_items"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Unit price after product discount"
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order: Mapped[Order] = relationship("Order", back_populates="items")


class OrderRefund(BaseModel):
    """Append-only refund record."""

    __tablename__ = "order_refunds"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_order_refunds_amount_positive"),
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(500))
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[RefundStatus] = mapped_column(
        SQLEnum(RefundStatus, name="refund_status", values_callable=_enum_values),
        nullable=False,
        default=RefundStatus.PENDING,
    )
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(String(255))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_by: Mapped[Optional[str]] = mapped_column(String(255))

    order: Mapped[Order] = relationship("Order", back_populates="refunds")


class OrderStatusHistory(BaseModel):
    """Append-only audit trail of status changes."""

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(255))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    order: Mapped[Order] = relationship("Order", back_populates="status_history")
