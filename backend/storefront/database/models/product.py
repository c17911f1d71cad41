"""
Product catalog model.

Checkout reads prices, discount and shipping rules from this table. The
only writes issued by order handling are the stock counter updates, which
are performed as single conditional UPDATE statements by the inventory
repository rather than through ORM attribute assignment.
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel

CENT = Decimal("0.01")


class ProductDiscountType(str, Enum):
    """How a product level discount value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"

    @classmethod
    def from_string(cls, value: str) -> "ProductDiscountType":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid discount type: {value}")


class Product(BaseModel):
    """
    Sellable product with pricing, shipping and stock attributes.

    Attributes:
        title: Display title, copied into order item snapshots
        price: List price before product discount
        discount_type: Percentage or fixed amount discount
        discount_value: Discount amount, zero when no discount applies
        shipping_charges: Flat shipping charge for this product
        free_shipping_threshold: Subtotal at which shipping is waived (0 = never)
        free_shipping_min_quantity: Cart quantity at which shipping is waived (0 = never)
        cod_enabled: Whether the product may be paid cash on delivery
        stock: Units available for sale
        taxonomy_ids: Category and tag identifiers used by coupon restrictions
    """

    __tablename__ = "products"

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint(
            "discount_value >= 0", name="ck_products_discount_value_non_negative"
        ),
        CheckConstraint(
            "shipping_charges >= 0", name="ck_products_shipping_non_negative"
        ),
        Index("ix_products_is_active", "is_active"),
        {"comment": "Storefront product catalog"},
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    slug: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="URL slug",
    )

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    discount_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ProductDiscountType.PERCENTAGE.value,
    )

    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    shipping_charges: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    free_shipping_threshold: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    free_shipping_min_quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    cod_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    returnable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    taxonomy_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)),
        nullable=False,
        default=list,
        comment="Category and tag identifiers",
    )

    @property
    def final_price(self) -> Decimal:
        """Unit price after the product discount, floored at zero."""
        price = Decimal(self.price)
        value = Decimal(self.discount_value or 0)
        if value <= 0:
            return price.quantize(CENT, rounding=ROUND_HALF_UP)

        if ProductDiscountType.from_string(self.discount_type) == ProductDiscountType.PERCENTAGE:
            reduced = price - price * value / Decimal("100")
        else:
            reduced = price - value

        return max(Decimal("0"), reduced).quantize(CENT, rounding=ROUND_HALF_UP)

    def shipping_waived(self, subtotal: Decimal, total_quantity: int) -> bool:
        """
        Check whether this product ships free for the given cart.

        Either rule is sufficient: the cart subtotal reaching the threshold
        or the total quantity reaching the minimum quantity.
        """
        threshold = Decimal(self.free_shipping_threshold or 0)
        if threshold > 0 and subtotal >= threshold:
            return True
        min_quantity = self.free_shipping_min_quantity or 0
        return min_quantity > 0 and total_quantity >= min_quantity
