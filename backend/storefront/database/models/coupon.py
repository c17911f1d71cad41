"""
Coupon model for order level discounts.

Coupons are looked up by their uppercase code. Validity covers the active
flag, the start/end window and the usage limit; the minimum subtotal and
product/taxonomy restrictions are checked against the cart at checkout.
The usage counter is only ever incremented with an atomic UPDATE inside the
transaction that creates the consuming order.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from storefront.core.logging import get_logger
from storefront.database.base import BaseModel

logger = get_logger(__name__)

CENT = Decimal("0.01")


class CouponType(str, Enum):
    """Coupon discount type enumeration."""

    FLAT = "flat"
    PERCENT = "percent"

    @classmethod
    def from_string(cls, value: str) -> "CouponType":
        """
        Create CouponType from string value.

        Raises:
            ValueError: If value is not a valid coupon type
        """
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid coupon type: {value}")


class Coupon(BaseModel):
    """
    Discount coupon redeemable at checkout.

    Attributes:
        code: Unique uppercase code entered by customers
        type: Flat amount or percentage of the merchandise subtotal
        value: Discount amount or percentage (0-100)
        min_subtotal: Minimum merchandise subtotal required
        starts_at: Start of validity window
        ends_at: End of validity window
        usage_limit: Maximum number of orders (NULL = unlimited)
        used_count: Number of orders that consumed the coupon
        applies_to_product_ids: Product restriction (empty = all products)
        applies_to_taxonomy_ids: Category/tag restriction (empty = all)
        is_active: Whether the coupon can currently be used
    """

    __tablename__ = "coupons"

    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_coupons_value_non_negative"),
        CheckConstraint("min_subtotal >= 0", name="ck_coupons_min_subtotal_non_negative"),
        CheckConstraint(
            "usage_limit IS NULL OR usage_limit > 0",
            name="ck_coupons_usage_limit_positive",
        ),
        CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        CheckConstraint("ends_at > starts_at", name="ck_coupons_valid_date_range"),
        CheckConstraint(
            "(type = 'percent' AND value <= 100) OR (type = 'flat')",
            name="ck_coupons_percent_max_100",
        ),
        Index("ix_coupons_active_window", "is_active", "starts_at", "ends_at"),
        {"comment": "Checkout discount coupons"},
    )

    code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        comment="Unique uppercase coupon code",
    )

    type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="Discount type: flat or percent",
    )

    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    min_subtotal: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    applies_to_product_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)),
        nullable=False,
        default=list,
    )

    applies_to_taxonomy_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)),
        nullable=False,
        default=list,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """
        Check active flag, validity window and usage limit.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            True if the coupon can be redeemed
        """
        now = now or datetime.now(timezone.utc)

        if not self.is_active:
            logger.debug("Coupon is inactive", code=self.code)
            return False

        if now < self.starts_at or now > self.ends_at:
            logger.debug(
                "Coupon outside validity window",
                code=self.code,
                starts_at=self.starts_at,
                ends_at=self.ends_at,
            )
            return False

        if self.usage_limit is not None and (self.used_count or 0) >= self.usage_limit:
            logger.debug(
                "Coupon usage limit reached",
                code=self.code,
                used_count=self.used_count,
                usage_limit=self.usage_limit,
            )
            return False

        return True

    @property
    def is_restricted(self) -> bool:
        return bool(self.applies_to_product_ids or self.applies_to_taxonomy_ids)

    def applies_to(self, product_id: str, taxonomy_ids: Iterable[str] = ()) -> bool:
        """
        Check whether a cart line satisfies the coupon restriction.

        Unrestricted coupons apply to every product.
        """
        if not self.is_restricted:
            return True
        if product_id in {str(p) for p in self.applies_to_product_ids or []}:
            return True
        allowed = {str(t) for t in self.applies_to_taxonomy_ids or []}
        return any(str(t) in allowed for t in taxonomy_ids)

    def calculate_discount(self, subtotal: Decimal) -> Decimal:
        """
        Calculate the discount for a merchandise subtotal.

        Flat coupons take their value, percent coupons take a rounded
        percentage; either way the result never exceeds the subtotal and is
        never negative.

        Args:
            subtotal: Merchandise subtotal the coupon applies to

        Returns:
            Discount amount rounded to cents
        """
        subtotal = max(Decimal("0"), Decimal(subtotal))
        value = Decimal(self.value)

        if CouponType.from_string(self.type) == CouponType.PERCENT:
            discount = (subtotal * value / Decimal("100")).quantize(
                CENT, rounding=ROUND_HALF_UP
            )
        else:
            discount = value

        return max(Decimal("0"), min(discount, subtotal))

    @property
    def remaining_uses(self) -> Optional[int]:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - (self.used_count or 0))

    def __repr__(self) -> str:
        return (
            f"<Coupon(code={self.code!r}, type={self.type!r}, "
            f"value={self.value}, used_count={self.used_count})>"
        )
