"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata for
Alembic and relationship resolution.
"""

from storefront.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from storefront.database.models.cart import Cart, CartItem
from storefront.database.models.coupon import Coupon, CouponType
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderRefund,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ReturnStatus,
)
from storefront.database.models.product import Product, ProductDiscountType
from storefront.database.models.user import User, UserRole

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Cart",
    "CartItem",
    "Coupon",
    "CouponType",
    "Order",
    "OrderItem",
    "OrderRefund",
    "OrderStatus",
    "OrderStatusHistory",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "ProductDiscountType",
    "RefundStatus",
    "ReturnStatus",
    "User",
    "UserRole",
]
