"""
Checkout service turning a cart into a payment session or an order.

This module implements the CheckoutService class. A paid cart becomes a
hosted Stripe Checkout session carrying the encoded order intent; nothing
is written to the database until the payment is confirmed. Zero-total
carts and cash-on-delivery carts become confirmed orders immediately,
inside one transaction that also takes the stock, clears the cart and
counts the coupon redemption.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from storefront.core.config import Settings
from storefront.core.logging import get_logger
from storefront.core.money import to_cents
from storefront.database.models.order import Order, PaymentMethod, PaymentStatus
from storefront.database.models.user import User
from storefront.services.checkout.pricing_engine import (
    CartLine,
    CartTooLargeError,
    InvalidCouponError,
    InvalidProductError,
    OutOfStockError,
    PricingEngine,
    Quote,
)
from storefront.services.checkout.repository import InventoryRepository
from storefront.services.notifications.service import OrderNotifier
from storefront.services.orders.factory import build_order
from storefront.services.orders.repository import OrderRepository
from storefront.services.payments.metadata import (
    OrderIntent,
    OrderIntentTooLarge,
    ShippingAddress,
)
from storefront.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass(frozen=True)
class CheckoutItem:
    """Requested product id and quantity."""

    product_id: uuid.UUID
    quantity: int = 1


@dataclass
class CheckoutResult:
    """
    Outcome of a checkout.

    Exactly one of ``session_id``/``url`` (card payment pending) or
    ``order`` (order created immediately) is set.
    """

    total: Any
    session_id: Optional[str] = None
    url: Optional[str] = None
    order: Optional[Order] = None


class CheckoutService:
    """
    Checkout orchestration.

    Attributes:
        orders: Order repository, owner of the transaction
        inventory: Product, coupon and cart repository on the same session
        stripe_client: Stripe API client
        notifier: Order email notifier
        settings: Application settings
        pricing_engine: Cart pricing calculator
    """

    def __init__(
        self,
        orders: OrderRepository,
        inventory: InventoryRepository,
        stripe_client: StripeClient,
        notifier: OrderNotifier,
        settings: Settings,
        pricing_engine: Optional[PricingEngine] = None,
    ):
        self.orders = orders
        self.inventory = inventory
        self.stripe_client = stripe_client
        self.notifier = notifier
        self.settings = settings
        self.pricing_engine = pricing_engine or PricingEngine()

    async def quote(
        self,
        items: Sequence[CheckoutItem],
        coupon_code: Optional[str] = None,
        cod: bool = False,
    ) -> Quote:
        """
        Validate and price a cart without side effects.

        Args:
            items: Requested products and quantities
            coupon_code: Coupon to apply
            cod: Require every product to accept cash on delivery

        Returns:
            Priced quote

        Raises:
            CheckoutError: If any product, stock, coupon or COD rule fails
        """
        lines = await self._load_lines(items)
        if cod:
            self.pricing_engine.check_cod_eligible(lines)

        coupon = None
        if coupon_code:
            coupon = await self.inventory.get_coupon_by_code(coupon_code)
            if coupon is None:
                raise InvalidCouponError("Invalid coupon code", coupon_code=coupon_code)

        return self.pricing_engine.quote(lines, coupon=coupon)

    async def create_checkout_session(
        self,
        items: Sequence[CheckoutItem],
        coupon_code: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
        user: Optional[User] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Start a card checkout.

        Zero-total carts are turned into an order right away; everything
        else gets a hosted Checkout session whose metadata carries the
        order intent.

        Raises:
            CheckoutError: If validation fails
            StripeClientError: If Stripe rejects or cannot be reached
        """
        quote = await self.quote(items, coupon_code)
        intent = quote.to_intent(
            user_id=str(user.id) if user else None,
            shipping_address=shipping_address,
        )
        email = user.email if user else customer_email

        if quote.is_free:
            order = await self._place_order(
                intent,
                PaymentMethod.STRIPE,
                PaymentStatus.COMPLETED,
                user,
                email,
            )
            logger.info(
                "Zero-total order created without payment session",
                order_id=str(order.id),
                order_number=order.order_number,
            )
            return CheckoutResult(total=quote.total, order=order)

        try:
            metadata = intent.to_metadata()
        except OrderIntentTooLarge as e:
            raise CartTooLargeError(
                "Cart has too many items to check out at once",
                **e.context,
            ) from e

        # One key per checkout attempt, shared by the retries of each call
        idempotency_key = f"checkout_{uuid.uuid4()}"

        discounts = None
        if quote.discount > 0:
            coupon = await self.stripe_client.create_coupon(
                amount_off=to_cents(quote.discount),
                currency=self.settings.currency,
                name=quote.coupon.code if quote.coupon else "Discount",
                idempotency_key=f"{idempotency_key}_coupon",
            )
            discounts = [{"coupon": coupon["id"]}]

        session = await self.stripe_client.create_checkout_session(
            line_items=self._build_line_items(quote),
            success_url=(
                f"{self.settings.client_url}/order/success"
                f"?session_id={CHECKOUT_SESSION_PLACEHOLDER}"
            ),
            cancel_url=f"{self.settings.client_url}/skincare",
            metadata=metadata,
            customer_email=email,
            discounts=discounts,
            idempotency_key=f"{idempotency_key}_session",
        )

        logger.info(
            "Checkout session started",
            session_id=session["id"],
            user_id=intent.user_id,
            total=str(quote.total),
            item_count=len(intent.items),
        )
        return CheckoutResult(total=quote.total, session_id=session["id"], url=session["url"])

    async def create_cod_order(
        self,
        items: Sequence[CheckoutItem],
        coupon_code: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
        user: Optional[User] = None,
        customer_email: Optional[str] = None,
    ) -> Order:
        """
        Place a cash-on-delivery order.

        Raises:
            CODNotSupportedError: If a product does not accept cash on delivery
            CheckoutError: If other validation fails
        """
        quote = await self.quote(items, coupon_code, cod=True)
        intent = quote.to_intent(
            user_id=str(user.id) if user else None,
            shipping_address=shipping_address,
        )
        order = await self._place_order(
            intent,
            PaymentMethod.COD,
            PaymentStatus.PENDING,
            user,
            user.email if user else customer_email,
        )
        logger.info(
            "Cash on delivery order created",
            order_id=str(order.id),
            order_number=order.order_number,
            total=str(order.total),
        )
        return order

    async def _load_lines(self, items: Sequence[CheckoutItem]) -> list[CartLine]:
        quantities: dict[uuid.UUID, int] = {}
        for item in items:
            quantities[item.product_id] = quantities.get(item.product_id, 0) + max(
                1, item.quantity
            )

        if not quantities:
            raise InvalidProductError("Cart is empty")

        products = await self.inventory.get_active_products(quantities.keys())
        if len(products) != len(quantities):
            found = {product.id for product in products}
            raise InvalidProductError(
                "Invalid product(s)",
                product_ids=[str(pid) for pid in quantities if pid not in found],
            )

        by_id = {product.id: product for product in products}
        return [CartLine(product=by_id[pid], quantity=qty) for pid, qty in quantities.items()]

    def _build_line_items(self, quote: Quote) -> list[dict[str, Any]]:
        currency = self.settings.currency
        line_items: list[dict[str, Any]] = []
        for line in quote.lines:
            product_data: dict[str, Any] = {
                "name": line.product.title,
                "metadata": {"productId": str(line.product.id)},
            }
            if line.product.image_url:
                product_data["images"] = [line.product.image_url]
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": to_cents(line.list_price),
                        "product_data": product_data,
                    },
                    "quantity": line.quantity,
                }
            )

        if quote.shipping_charges > 0:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": to_cents(quote.shipping_charges),
                        "product_data": {"name": "Shipping"},
                    },
                    "quantity": 1,
                }
            )
        return line_items

    async def _place_order(
        self,
        intent: OrderIntent,
        payment_method: PaymentMethod,
        payment_status: PaymentStatus,
        user: Optional[User],
        customer_email: Optional[str],
    ) -> Order:
        order = build_order(
            intent,
            payment_method=payment_method,
            payment_status=payment_status,
            currency=self.settings.currency,
            customer_email=customer_email,
        )
        await self.orders.add(order)

        for item in order.items:
            if not await self.inventory.decrement_stock(item.product_id, item.quantity):
                await self.orders.rollback()
                raise OutOfStockError(
                    f"Out of stock: {item.title}",
                    product_id=str(item.product_id),
                    requested=item.quantity,
                )

        if order.coupon_code:
            await self.inventory.increment_coupon_usage(order.coupon_code)
        if user is not None:
            await self.inventory.clear_cart(user.id)

        await self.orders.commit()
        self.notifier.schedule_order_confirmation(order)
        return order
