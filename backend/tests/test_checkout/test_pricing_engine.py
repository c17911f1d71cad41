"""
Tests for checkout pricing.

Covers product discounts, free shipping rules, coupon validation and the
order total formula, including the reference checkout scenarios.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storefront.services.checkout.pricing_engine import (
    CartLine,
    CODNotSupportedError,
    CouponNotApplicableError,
    InvalidCouponError,
    OutOfStockError,
    PricingEngine,
)
from tests.fakes import make_coupon, make_product


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def engine() -> PricingEngine:
    return PricingEngine()


@pytest.fixture
def product_a():
    """Product A from the checkout scenarios: price 50, no discount, COD disabled."""
    return make_product(title="Product A", price=Decimal("50"), cod_enabled=False, stock=5)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Reference Scenarios
# ============================================================================


class TestCheckoutScenarios:
    """Totals for the documented checkout examples."""

    def test_flat_coupon_with_minimum_subtotal(self, engine, product_a, now):
        coupon = make_coupon(
            code="SAVE10", type="flat", value=Decimal("10"), min_subtotal=Decimal("50")
        )

        quote = engine.quote([CartLine(product_a, 2)], coupon=coupon, now=now)

        assert quote.subtotal == Decimal("100.00")
        assert quote.discount == Decimal("10")
        assert quote.total == Decimal("90.00")

        metadata = quote.to_intent().to_metadata()
        assert metadata["total"] == "90"
        assert metadata["subtotal"] == "100"
        assert metadata["couponCode"] == "SAVE10"

    def test_percent_coupon(self, engine, product_a, now):
        coupon = make_coupon(code="SAVE20", type="percent", value=Decimal("20"))

        quote = engine.quote([CartLine(product_a, 2)], coupon=coupon, now=now)

        assert quote.coupon_discount == Decimal("20.00")
        assert quote.total == Decimal("80.00")

    def test_full_discount_coupon_makes_cart_free(self, engine, product_a, now):
        coupon = make_coupon(code="FREE", type="percent", value=Decimal("100"))

        quote = engine.quote([CartLine(product_a, 1)], coupon=coupon, now=now)

        assert quote.total == Decimal("0")
        assert quote.is_free


# ============================================================================
# Product Discounts And Shipping
# ============================================================================


class TestProductPricing:
    """Per-product discounts and shipping."""

    def test_percentage_product_discount(self, engine):
        product = make_product(
            price=Decimal("40.00"), discount_type="percentage", discount_value=Decimal("25")
        )

        quote = engine.quote([CartLine(product, 2)])

        assert quote.lines[0].unit_price == Decimal("30.00")
        assert quote.subtotal == Decimal("80.00")
        assert quote.product_discount == Decimal("20.00")
        assert quote.total == Decimal("60.00")

    def test_fixed_discount_never_goes_below_zero(self, engine):
        product = make_product(
            price=Decimal("10.00"), discount_type="fixed", discount_value=Decimal("15")
        )

        quote = engine.quote([CartLine(product, 1)])

        assert quote.lines[0].unit_price == Decimal("0.00")
        assert quote.total == Decimal("0.00")

    def test_shipping_charged_below_threshold(self, engine):
        product = make_product(
            price=Decimal("30.00"),
            shipping_charges=Decimal("5.00"),
            free_shipping_threshold=Decimal("100.00"),
        )

        quote = engine.quote([CartLine(product, 2)])

        assert quote.shipping_charges == Decimal("5.00")
        assert quote.total == Decimal("65.00")

    def test_shipping_waived_at_threshold(self, engine):
        product = make_product(
            price=Decimal("50.00"),
            shipping_charges=Decimal("5.00"),
            free_shipping_threshold=Decimal("100.00"),
        )

        quote = engine.quote([CartLine(product, 2)])

        assert quote.shipping_charges == Decimal("0")
        assert quote.total == Decimal("100.00")

    def test_shipping_waived_by_quantity(self, engine):
        product = make_product(
            price=Decimal("10.00"),
            shipping_charges=Decimal("4.00"),
            free_shipping_min_quantity=3,
        )

        assert engine.quote([CartLine(product, 2)]).shipping_charges == Decimal("4.00")
        assert engine.quote([CartLine(product, 3)]).shipping_charges == Decimal("0")

    @pytest.mark.parametrize(
        "price,quantity,filler_quantity,expected_shipping",
        [
            ("60.00", 2, 0, Decimal("0")),  # subtotal 120, quantity 2
            ("5.00", 2, 4, Decimal("0")),  # subtotal 50, quantity 6
            ("25.00", 2, 0, Decimal("5.00")),  # subtotal 50, quantity 2
        ],
    )
    def test_either_free_shipping_rule_waives_shipping(
        self, engine, price, quantity, filler_quantity, expected_shipping
    ):
        product = make_product(
            price=Decimal(price),
            shipping_charges=Decimal("5.00"),
            free_shipping_threshold=Decimal("100.00"),
            free_shipping_min_quantity=5,
        )
        lines = [CartLine(product, quantity)]
        if filler_quantity:
            filler = make_product(title="Cotton Pads", price=Decimal("10.00"))
            lines.append(CartLine(filler, filler_quantity))

        quote = engine.quote(lines)

        assert quote.shipping_charges == expected_shipping

    def test_insufficient_stock_rejected(self, engine):
        product = make_product(stock=1)

        with pytest.raises(OutOfStockError) as exc_info:
            engine.quote([CartLine(product, 2)])

        assert exc_info.value.context["available"] == 1

    def test_cod_eligibility(self, engine, product_a):
        with pytest.raises(CODNotSupportedError):
            engine.check_cod_eligible([CartLine(product_a, 1)])

        engine.check_cod_eligible([CartLine(make_product(cod_enabled=True), 1)])


# ============================================================================
# Coupon Validation
# ============================================================================


class TestCouponValidation:
    """Coupon validity, minimums and restrictions."""

    def test_expired_coupon_rejected(self, engine, product_a, now):
        coupon = make_coupon(
            starts_at=now - timedelta(days=10),
            ends_at=now - timedelta(days=1),
        )

        with pytest.raises(InvalidCouponError):
            engine.quote([CartLine(product_a, 1)], coupon=coupon, now=now)

    def test_inactive_coupon_rejected(self, engine, product_a, now):
        coupon = make_coupon(is_active=False)

        with pytest.raises(InvalidCouponError):
            engine.quote([CartLine(product_a, 1)], coupon=coupon, now=now)

    def test_exhausted_coupon_rejected(self, engine, product_a, now):
        coupon = make_coupon(usage_limit=5, used_count=5)

        with pytest.raises(InvalidCouponError):
            engine.quote([CartLine(product_a, 1)], coupon=coupon, now=now)

    def test_minimum_subtotal_enforced(self, engine, product_a, now):
        coupon = make_coupon(min_subtotal=Decimal("150"))

        with pytest.raises(InvalidCouponError) as exc_info:
            engine.quote([CartLine(product_a, 2)], coupon=coupon, now=now)

        assert exc_info.value.context["coupon_code"] == "WELCOME"

    def test_minimum_subtotal_measured_after_product_discount(self, engine, now):
        product = make_product(
            price=Decimal("100.00"), discount_type="percentage", discount_value=Decimal("50")
        )
        coupon = make_coupon(value=Decimal("5"), min_subtotal=Decimal("60"))

        with pytest.raises(InvalidCouponError) as exc_info:
            engine.quote([CartLine(product, 1)], coupon=coupon, now=now)

        assert exc_info.value.context["subtotal"] == "50.00"

        quote = engine.quote([CartLine(product, 2)], coupon=coupon, now=now)
        assert quote.coupon_discount == Decimal("5")
        assert quote.total == Decimal("95.00")

    def test_restricted_coupon_requires_matching_item(self, engine, product_a, now):
        coupon = make_coupon(applies_to_taxonomy_ids=["sunscreen"])

        with pytest.raises(CouponNotApplicableError):
            engine.quote([CartLine(product_a, 1)], coupon=coupon, now=now)

    def test_restricted_coupon_matches_taxonomy(self, engine, now):
        product = make_product(price=Decimal("20"), taxonomy_ids=["sunscreen"])
        coupon = make_coupon(value=Decimal("5"), applies_to_taxonomy_ids=["sunscreen"])

        quote = engine.quote([CartLine(product, 1)], coupon=coupon, now=now)

        assert quote.total == Decimal("15.00")

    def test_restricted_coupon_matches_product_id(self, engine, now):
        product = make_product(price=Decimal("20"))
        coupon = make_coupon(value=Decimal("5"), applies_to_product_ids=[str(product.id)])

        quote = engine.quote([CartLine(product, 1)], coupon=coupon, now=now)

        assert quote.coupon_discount == Decimal("5")

    def test_coupon_capped_at_discounted_subtotal(self, engine, now):
        product = make_product(
            price=Decimal("20.00"), discount_type="percentage", discount_value=Decimal("50")
        )
        coupon = make_coupon(type="flat", value=Decimal("18"))

        quote = engine.quote([CartLine(product, 1)], coupon=coupon, now=now)

        assert quote.coupon_discount == Decimal("10.00")
        assert quote.discount <= quote.subtotal
        assert quote.total == Decimal("0.00")
