"""
Cart pricing for checkout.

This module implements the PricingEngine class, which turns loaded products,
requested quantities and an optional coupon into a priced quote:

- per-product discount first, unit price floored at zero
- per-product shipping, waived when the discounted subtotal reaches the
  product's free-shipping threshold or the cart quantity reaches its
  minimum quantity
- coupon discount computed on the list-price subtotal and capped at the
  discounted merchandise subtotal
- ``total = max(0, subtotal - discount + shipping_charges)``

The engine is pure: it performs no I/O and never mutates products or
coupons, so quotes can be recomputed freely.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from storefront.core.logging import get_logger
from storefront.core.money import ZERO, to_decimal
from storefront.database.models.coupon import Coupon
from storefront.database.models.product import Product
from storefront.services.payments.metadata import (
    CouponSnapshot,
    IntentItem,
    OrderIntent,
    ShippingAddress,
)

logger = get_logger(__name__)


class CheckoutError(Exception):
    """Base exception for checkout validation errors."""

    code = "CHECKOUT_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidProductError(CheckoutError):
    """Raised when a requested product does not exist or is inactive."""

    code = "INVALID_PRODUCT"


class OutOfStockError(CheckoutError):
    """Raised when a product has less stock than requested."""

    code = "OUT_OF_STOCK"


class InvalidCouponError(CheckoutError):
    """Raised when a coupon is unknown, expired, exhausted or below minimum."""

    code = "INVALID_COUPON"


class CouponNotApplicableError(CheckoutError):
    """Raised when a restricted coupon matches no cart item."""

    code = "COUPON_NOT_APPLICABLE"


class CODNotSupportedError(CheckoutError):
    """Raised when cash on delivery is requested for an ineligible product."""

    code = "COD_NOT_SUPPORTED"


class CartTooLargeError(CheckoutError):
    """Raised when the cart cannot be carried in session metadata."""

    code = "CART_TOO_LARGE"


@dataclass(frozen=True)
class CartLine:
    """Requested product and quantity."""

    product: Product
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    """Cart line after product discount."""

    product: Product
    quantity: int
    list_price: Decimal
    unit_price: Decimal

    @property
    def list_subtotal(self) -> Decimal:
        return self.list_price * self.quantity

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Quote:
    """Priced cart."""

    lines: list[PricedLine]
    subtotal: Decimal
    product_discount: Decimal
    shipping_charges: Decimal
    coupon: Optional[Coupon] = None
    coupon_discount: Decimal = ZERO
    total_quantity: int = 0
    shipping_by_product: dict[str, Decimal] = field(default_factory=dict)

    @property
    def merchandise_subtotal(self) -> Decimal:
        """Subtotal after product discounts."""
        return self.subtotal - self.product_discount

    @property
    def discount(self) -> Decimal:
        return self.product_discount + self.coupon_discount

    @property
    def total(self) -> Decimal:
        return max(ZERO, self.subtotal - self.discount + self.shipping_charges)

    @property
    def is_free(self) -> bool:
        return self.total == ZERO

    def to_intent(
        self,
        user_id: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
    ) -> OrderIntent:
        """Build the order intent carried through payment."""
        coupon = None
        if self.coupon is not None:
            coupon = CouponSnapshot(
                code=self.coupon.code,
                type=self.coupon.type,
                value=self.coupon.value,
                discount=self.coupon_discount,
            )

        return OrderIntent(
            user_id=user_id,
            items=[
                IntentItem(
                    product_id=str(line.product.id),
                    title=line.product.title,
                    price=line.unit_price,
                    quantity=line.quantity,
                    subtotal=line.subtotal,
                )
                for line in self.lines
            ],
            shipping_address=shipping_address or ShippingAddress(),
            coupon=coupon,
            subtotal=self.subtotal,
            product_discount=self.product_discount,
            discount=self.discount,
            shipping_charges=self.shipping_charges,
            total=self.total,
        )


class PricingEngine:
    """
    Checkout pricing calculator.

    Example:
        >>> engine = PricingEngine()
        >>> quote = engine.quote([CartLine(product, 2)], coupon=save10)
        >>> quote.total
        Decimal('90.00')
    """

    def quote(
        self,
        lines: Sequence[CartLine],
        coupon: Optional[Coupon] = None,
        now: Optional[datetime] = None,
    ) -> Quote:
        """
        Price a cart.

        Args:
            lines: Products with requested quantities
            coupon: Coupon to apply, already resolved by code
            now: Reference time for coupon validity

        Returns:
            Priced quote

        Raises:
            OutOfStockError: If a product has insufficient stock
            InvalidCouponError: If the coupon cannot be redeemed
            CouponNotApplicableError: If a restricted coupon matches no item
        """
        self.check_stock(lines)

        priced = [
            PricedLine(
                product=line.product,
                quantity=line.quantity,
                list_price=to_decimal(line.product.price),
                unit_price=line.product.final_price,
            )
            for line in lines
        ]

        subtotal = sum((line.list_subtotal for line in priced), ZERO)
        merchandise = sum((line.subtotal for line in priced), ZERO)
        total_quantity = sum(line.quantity for line in priced)

        shipping_by_product = self.calculate_shipping(priced, merchandise, total_quantity)

        quote = Quote(
            lines=priced,
            subtotal=subtotal,
            product_discount=subtotal - merchandise,
            shipping_charges=sum(shipping_by_product.values(), ZERO),
            total_quantity=total_quantity,
            shipping_by_product=shipping_by_product,
        )

        if coupon is not None:
            quote.coupon = coupon
            quote.coupon_discount = self.calculate_coupon_discount(
                coupon, priced, subtotal, merchandise, now
            )

        logger.debug(
            "Cart priced",
            item_count=len(priced),
            subtotal=str(quote.subtotal),
            discount=str(quote.discount),
            shipping_charges=str(quote.shipping_charges),
            total=str(quote.total),
        )

        return quote

    @staticmethod
    def check_stock(lines: Iterable[CartLine]) -> None:
        for line in lines:
            if (line.product.stock or 0) < line.quantity:
                raise OutOfStockError(
                    f"Out of stock: {line.product.title}",
                    product_id=str(line.product.id),
                    requested=line.quantity,
                    available=line.product.stock,
                )

    @staticmethod
    def check_cod_eligible(lines: Iterable[CartLine]) -> None:
        """
        Raises:
            CODNotSupportedError: If any product does not accept cash on delivery
        """
        for line in lines:
            if not line.product.cod_enabled:
                raise CODNotSupportedError(
                    f"Cash on delivery is not available for: {line.product.title}",
                    product_id=str(line.product.id),
                )

    @staticmethod
    def calculate_shipping(
        lines: Sequence[PricedLine],
        merchandise_subtotal: Decimal,
        total_quantity: int,
    ) -> dict[str, Decimal]:
        """
        Calculate shipping charge per product.

        Args:
            lines: Priced cart lines
            merchandise_subtotal: Subtotal after product discounts
            total_quantity: Units across the whole cart

        Returns:
            Mapping of product id to charged shipping
        """
        shipping: dict[str, Decimal] = {}
        for line in lines:
            charge = to_decimal(line.product.shipping_charges or 0)
            if charge <= 0:
                continue
            if line.product.shipping_waived(merchandise_subtotal, total_quantity):
                charge = ZERO
            shipping[str(line.product.id)] = charge
        return shipping

    @staticmethod
    def calculate_coupon_discount(
        coupon: Coupon,
        lines: Sequence[PricedLine],
        subtotal: Decimal,
        merchandise_subtotal: Decimal,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """
        Validate a coupon against the cart and compute its discount.

        Raises:
            InvalidCouponError: If the coupon is not redeemable for this subtotal
            CouponNotApplicableError: If no cart item satisfies its restriction
        """
        now = now or datetime.now(timezone.utc)

        if not coupon.is_valid(now):
            raise InvalidCouponError("Invalid or expired coupon", coupon_code=coupon.code)

        # Minimum is measured after product discounts
        if merchandise_subtotal < to_decimal(coupon.min_subtotal or 0):
            raise InvalidCouponError(
                f"Minimum subtotal of {to_decimal(coupon.min_subtotal)} required for this coupon",
                coupon_code=coupon.code,
                min_subtotal=str(coupon.min_subtotal),
                subtotal=str(merchandise_subtotal),
            )

        if coupon.is_restricted and not any(
            coupon.applies_to(str(line.product.id), line.product.taxonomy_ids or [])
            for line in lines
        ):
            raise CouponNotApplicableError(
                "Coupon does not apply to any item in the cart",
                coupon_code=coupon.code,
            )

        return min(coupon.calculate_discount(subtotal), merchandise_subtotal)
