"""
Order construction from a priced order intent.

Checkout (free and cash-on-delivery orders) and payment reconciliation
(card orders) both materialize orders from an OrderIntent; this module
keeps the snapshot and money mapping in one place.
"""

import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
)
from storefront.services.payments.metadata import OrderIntent

_BASE36 = string.digits + string.ascii_uppercase


def generate_order_number() -> str:
    """
    Generate a human-readable order number.

    Format: ``ORD-<epoch milliseconds>-<9 random base36 characters>``.
    """
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"ORD-{millis}-{suffix}"


def build_order(
    intent: OrderIntent,
    payment_method: PaymentMethod,
    payment_status: PaymentStatus,
    currency: str,
    session_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """
    Create a confirmed, not yet persisted order from an intent.

    Args:
        intent: Priced order contents
        payment_method: Card or cash on delivery
        payment_status: Completed for captured or free orders, pending for COD
        currency: ISO currency code
        session_id: Checkout session id, the idempotency key for card orders
        payment_intent_id: Payment intent of the captured charge
        customer_email: Address for order emails
        now: Creation time

    Returns:
        Order with items and initial status history attached
    """
    now = now or datetime.now(timezone.utc)
    coupon = intent.coupon

    order = Order(
        id=uuid.uuid4(),
        order_number=generate_order_number(),
        user_id=uuid.UUID(intent.user_id) if intent.user_id else None,
        customer_email=customer_email,
        currency=currency,
        subtotal=intent.subtotal,
        product_discount=intent.product_discount,
        discount=intent.discount,
        shipping_charges=intent.shipping_charges,
        total=intent.total,
        coupon_code=coupon.code if coupon else None,
        coupon_type=coupon.type if coupon else None,
        coupon_value=coupon.value if coupon else None,
        coupon_discount=coupon.discount if coupon else None,
        payment_method=payment_method,
        payment_session_id=session_id,
        payment_intent_id=payment_intent_id,
        payment_status=payment_status,
        paid_at=now if payment_status == PaymentStatus.COMPLETED else None,
        status=OrderStatus.CONFIRMED,
        confirmed_at=now,
        shipping_address=intent.shipping_address.model_dump(),
        items=[
            OrderItem(
                product_id=uuid.UUID(item.product_id),
                title=item.title,
                price=item.price,
                quantity=item.quantity,
                subtotal=item.subtotal,
            )
            for item in intent.items
        ],
        refunds=[],
        status_history=[
            OrderStatusHistory(
                from_status=None,
                to_status=OrderStatus.CONFIRMED.value,
                changed_by="system",
                notes=f"Order placed ({payment_method.value})",
            )
        ],
    )
    return order
