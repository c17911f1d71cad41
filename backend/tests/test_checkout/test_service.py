"""
Tests for the checkout service.

Covers cart validation, the hosted Stripe session path, the zero-total
fast path and cash-on-delivery orders, including the transactional side
effects on stock, coupon usage and the cart.
"""

import uuid
from decimal import Decimal

import pytest

from storefront.database.models.order import OrderStatus, PaymentMethod, PaymentStatus
from storefront.services.checkout.pricing_engine import (
    CartTooLargeError,
    CODNotSupportedError,
    InvalidCouponError,
    InvalidProductError,
    OutOfStockError,
)
from storefront.services.checkout.service import CheckoutItem, CheckoutService
from storefront.services.payments.metadata import OrderIntent, ShippingAddress
from tests.fakes import make_coupon, make_product, make_repositories


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def repositories(db):
    return make_repositories(db)


@pytest.fixture
def checkout_service(repositories, mock_stripe_client, notifier, settings) -> CheckoutService:
    orders, inventory = repositories
    return CheckoutService(
        orders=orders,
        inventory=inventory,
        stripe_client=mock_stripe_client,
        notifier=notifier,
        settings=settings,
    )


@pytest.fixture
def address() -> ShippingAddress:
    return ShippingAddress(line1="1 Main St", city="Austin", state="TX", zip="78701")


# ============================================================================
# Cart Validation
# ============================================================================


class TestQuote:
    """Validation performed before any payment or order."""

    async def test_duplicate_lines_are_merged(self, checkout_service, serum):
        quote = await checkout_service.quote(
            [CheckoutItem(serum.id, 1), CheckoutItem(serum.id, 2)]
        )

        assert len(quote.lines) == 1
        assert quote.lines[0].quantity == 3

    async def test_non_positive_quantity_counts_as_one(self, checkout_service, serum):
        quote = await checkout_service.quote([CheckoutItem(serum.id, 0)])

        assert quote.total_quantity == 1

    async def test_unknown_product_rejected(self, checkout_service, serum):
        missing = uuid.uuid4()

        with pytest.raises(InvalidProductError) as exc_info:
            await checkout_service.quote([CheckoutItem(serum.id), CheckoutItem(missing)])

        assert exc_info.value.context["product_ids"] == [str(missing)]

    async def test_inactive_product_rejected(self, checkout_service, db):
        retired = db.add_product(make_product(title="Retired Balm", is_active=False))

        with pytest.raises(InvalidProductError):
            await checkout_service.quote([CheckoutItem(retired.id)])

    async def test_empty_cart_rejected(self, checkout_service):
        with pytest.raises(InvalidProductError):
            await checkout_service.quote([])

    async def test_unknown_coupon_rejected(self, checkout_service, serum):
        with pytest.raises(InvalidCouponError):
            await checkout_service.quote([CheckoutItem(serum.id)], coupon_code="NOPE")

    async def test_validation_failure_touches_nothing(
        self, checkout_service, cleanser, db, mock_stripe_client
    ):
        with pytest.raises(OutOfStockError):
            await checkout_service.create_checkout_session([CheckoutItem(cleanser.id, 4)])

        assert cleanser.stock == 3
        assert db.orders == {}
        mock_stripe_client.create_checkout_session.assert_not_called()


# ============================================================================
# Hosted Checkout Session
# ============================================================================


class TestCheckoutSession:
    """Card checkout through a hosted Stripe session."""

    async def test_session_created_without_order(
        self, checkout_service, serum, cleanser, customer, address, db, mock_stripe_client
    ):
        result = await checkout_service.create_checkout_session(
            [CheckoutItem(serum.id, 2), CheckoutItem(cleanser.id, 1)],
            shipping_address=address,
            user=customer,
        )

        assert result.session_id == "cs_test_123"
        assert result.url.startswith("https://checkout.stripe.com/")
        assert result.order is None
        assert result.total == Decimal("80.00")
        assert db.orders == {}
        assert serum.stock == 10

        kwargs = mock_stripe_client.create_checkout_session.call_args.kwargs
        assert kwargs["customer_email"] == "jane@example.com"
        assert kwargs["success_url"] == (
            "http://localhost:3000/order/success?session_id={CHECKOUT_SESSION_ID}"
        )
        assert kwargs["cancel_url"] == "http://localhost:3000/skincare"

        intent = OrderIntent.from_metadata(kwargs["metadata"])
        assert intent.user_id == str(customer.id)
        assert intent.total == Decimal("80.00")
        assert intent.shipping_address.city == "Austin"

    async def test_line_items_in_minor_units_with_shipping(
        self, checkout_service, serum, mock_stripe_client
    ):
        await checkout_service.create_checkout_session([CheckoutItem(serum.id, 2)])

        line_items = mock_stripe_client.create_checkout_session.call_args.kwargs["line_items"]
        assert line_items[0]["price_data"]["unit_amount"] == 4000
        assert line_items[0]["price_data"]["currency"] == "usd"
        assert line_items[0]["quantity"] == 2
        assert line_items[0]["price_data"]["product_data"]["metadata"] == {
            "productId": str(serum.id)
        }
        assert line_items[-1]["price_data"]["product_data"]["name"] == "Shipping"
        assert line_items[-1]["price_data"]["unit_amount"] == 500

    async def test_discounts_applied_as_one_stripe_coupon(
        self, checkout_service, serum, cleanser, save10, mock_stripe_client
    ):
        result = await checkout_service.create_checkout_session(
            [CheckoutItem(serum.id, 2), CheckoutItem(cleanser.id, 1)],
            coupon_code="save10",
        )

        # product discount 20.00 plus 10% of 95.00
        mock_stripe_client.create_coupon.assert_awaited_once()
        coupon_kwargs = mock_stripe_client.create_coupon.call_args.kwargs
        assert coupon_kwargs["amount_off"] == 2950
        assert coupon_kwargs["currency"] == "usd"
        assert coupon_kwargs["name"] == "SAVE10"
        kwargs = mock_stripe_client.create_checkout_session.call_args.kwargs
        assert kwargs["discounts"] == [{"coupon": "coupon_test_1"}]
        assert coupon_kwargs["idempotency_key"].startswith("checkout_")
        assert kwargs["idempotency_key"] == (
            coupon_kwargs["idempotency_key"].replace("_coupon", "_session")
        )
        assert result.total == Decimal("70.50")
        assert save10.used_count == 0

    async def test_each_checkout_gets_new_idempotency_key(
        self, checkout_service, cleanser, mock_stripe_client
    ):
        await checkout_service.create_checkout_session([CheckoutItem(cleanser.id, 1)])
        await checkout_service.create_checkout_session([CheckoutItem(cleanser.id, 1)])

        first, second = mock_stripe_client.create_checkout_session.call_args_list
        assert first.kwargs["idempotency_key"] != second.kwargs["idempotency_key"]

    async def test_no_stripe_coupon_without_discount(
        self, checkout_service, cleanser, mock_stripe_client
    ):
        await checkout_service.create_checkout_session([CheckoutItem(cleanser.id, 1)])

        mock_stripe_client.create_coupon.assert_not_called()
        assert mock_stripe_client.create_checkout_session.call_args.kwargs["discounts"] is None

    async def test_guest_checkout_uses_given_email(
        self, checkout_service, cleanser, mock_stripe_client
    ):
        await checkout_service.create_checkout_session(
            [CheckoutItem(cleanser.id)], customer_email="guest@example.com"
        )

        kwargs = mock_stripe_client.create_checkout_session.call_args.kwargs
        assert kwargs["customer_email"] == "guest@example.com"
        assert kwargs["metadata"]["userId"] == ""

    async def test_oversized_cart_rejected(self, checkout_service, db, mock_stripe_client):
        products = [
            db.add_product(make_product(title=f"Mini Sample {i:03d}" + "x" * 30, stock=5))
            for i in range(200)
        ]

        with pytest.raises(CartTooLargeError):
            await checkout_service.create_checkout_session(
                [CheckoutItem(product.id) for product in products]
            )

        mock_stripe_client.create_checkout_session.assert_not_called()


# ============================================================================
# Zero-Total Fast Path
# ============================================================================


class TestFreeOrder:
    """Carts priced at zero become orders without a payment session."""

    async def test_free_cart_creates_confirmed_order(
        self, checkout_service, db, customer, notifier, mock_stripe_client, now
    ):
        product = db.add_product(make_product(title="Lip Balm", price=Decimal("8"), stock=4))
        db.add_coupon(make_coupon(code="FREEBIE", type="percent", value=Decimal("100")))

        result = await checkout_service.create_checkout_session(
            [CheckoutItem(product.id, 2)], coupon_code="FREEBIE", user=customer
        )

        order = result.order
        assert result.session_id is None
        assert result.total == Decimal("0")
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.payment_method == PaymentMethod.STRIPE
        assert order.payment_session_id is None
        assert order.total == Decimal("0")
        assert order.customer_email == "jane@example.com"

        assert product.stock == 2
        assert db.coupons["FREEBIE"].used_count == 1
        assert db.cleared_carts == [str(customer.id)]
        assert order.id in db.orders

        mock_stripe_client.create_checkout_session.assert_not_called()
        notifier.schedule_order_confirmation.assert_called_once_with(order)


# ============================================================================
# Cash On Delivery
# ============================================================================


class TestCashOnDelivery:
    """Orders paid when delivered."""

    async def test_cod_order_created_immediately(
        self, checkout_service, serum, save10, customer, address, db, repositories, notifier
    ):
        orders, _ = repositories

        order = await checkout_service.create_cod_order(
            [CheckoutItem(serum.id, 2)],
            coupon_code="SAVE10",
            shipping_address=address,
            user=customer,
        )

        assert order.payment_method == PaymentMethod.COD
        assert order.payment_status == PaymentStatus.PENDING
        assert order.paid_at is None
        assert order.status == OrderStatus.CONFIRMED
        assert order.coupon_code == "SAVE10"
        assert order.coupon_discount == Decimal("8.00")
        assert order.total == Decimal("57.00")
        assert order.shipping_address["zip"] == "78701"
        assert order.items[0].price == Decimal("30.00")

        assert serum.stock == 8
        assert save10.used_count == 1
        assert orders.session.commits == 1
        notifier.schedule_order_confirmation.assert_called_once_with(order)

    async def test_cod_not_supported_for_card_only_product(
        self, checkout_service, serum, cleanser, db
    ):
        with pytest.raises(CODNotSupportedError):
            await checkout_service.create_cod_order(
                [CheckoutItem(serum.id), CheckoutItem(cleanser.id)]
            )

        assert db.orders == {}
        assert serum.stock == 10

    async def test_stock_race_rolls_back_order(
        self, checkout_service, serum, save10, db, repositories, monkeypatch, notifier
    ):
        orders, inventory = repositories
        original = inventory.decrement_stock

        async def sold_out_meanwhile(product_id, quantity):
            serum.stock = 0
            return await original(product_id, quantity)

        monkeypatch.setattr(inventory, "decrement_stock", sold_out_meanwhile)

        with pytest.raises(OutOfStockError):
            await checkout_service.create_cod_order(
                [CheckoutItem(serum.id)], coupon_code="SAVE10"
            )

        assert db.orders == {}
        assert save10.used_count == 0
        assert orders.session.rollbacks == 1
        notifier.schedule_order_confirmation.assert_not_called()
