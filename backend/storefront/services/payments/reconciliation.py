"""
Payment reconciliation: turning paid Checkout sessions into orders.

Two paths reach the same reconciliation. Stripe calls the webhook when a
session completes, and the browser calls the session verifier when it
returns from the hosted page, which may happen before the webhook arrives.
Either path may run first, both may run at once, and Stripe may deliver a
webhook more than once. Exactly one order is created per session:

1. An order already recorded for the session id is returned as is.
2. Otherwise the order is decoded from the session metadata and inserted.
   The unique constraint on ``orders.payment_session_id`` decides a race;
   the loser rolls back and returns the winner's order.
3. Stock decrements, the cart clear and the coupon usage increment run in
   the same transaction as the insert, so they happen once per order.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from storefront.core.config import Settings
from storefront.core.logging import get_logger, log_performance
from storefront.database.models.order import Order, PaymentMethod, PaymentStatus
from storefront.database.models.user import User
from storefront.services.checkout.repository import InventoryRepository
from storefront.services.notifications.service import OrderNotifier
from storefront.services.orders.factory import build_order
from storefront.services.orders.repository import DuplicateOrderError, OrderRepository
from storefront.services.payments.metadata import InvalidOrderIntent, OrderIntent
from storefront.services.payments.stripe_client import StripeClient, StripeSignatureError

logger = get_logger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
SESSION_EXPIRED = "checkout.session.expired"

PAID_STATUSES = ("paid", "no_payment_required")


class ReconciliationError(Exception):
    """Base exception for payment reconciliation errors."""

    code = "RECONCILIATION_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class WebhookSignatureError(ReconciliationError):
    """Raised when a webhook payload fails signature verification."""

    code = "INVALID_SIGNATURE"


class InvalidOrderIntentError(ReconciliationError):
    """Raised when a session does not carry a decodable order."""

    code = "INVALID_ORDER_INTENT"


class PaymentNotCompletedError(ReconciliationError):
    """Raised when a verified session has not been paid."""

    code = "PAYMENT_NOT_COMPLETED"


class SessionAccessDeniedError(ReconciliationError):
    """Raised when a session belongs to a different user than the caller."""

    code = "SESSION_ACCESS_DENIED"


@dataclass
class ReconciliationResult:
    order: Order
    created: bool


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


class ReconciliationService:
    """
    Creates orders for paid Checkout sessions exactly once.

    Attributes:
        orders: Order repository, owner of the transaction
        inventory: Product, coupon and cart repository on the same session
        stripe_client: Stripe API client
        notifier: Order email notifier
        settings: Application settings
    """

    def __init__(
        self,
        orders: OrderRepository,
        inventory: InventoryRepository,
        stripe_client: StripeClient,
        notifier: OrderNotifier,
        settings: Settings,
    ):
        self.orders = orders
        self.inventory = inventory
        self.stripe_client = stripe_client
        self.notifier = notifier
        self.settings = settings

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """
        Process a Stripe webhook delivery.

        Args:
            payload: Raw request body
            signature: ``Stripe-Signature`` header

        Returns:
            Acknowledgement, with ``order_id`` when an order was reconciled

        Raises:
            WebhookSignatureError: If the payload fails verification
            InvalidOrderIntentError: If a completed session carries no order
            StripeNotConfiguredError: If no webhook secret is configured
        """
        try:
            event = self.stripe_client.construct_webhook_event(payload, signature)
        except StripeSignatureError as e:
            logger.warning("Rejected webhook with invalid signature", reason=e.code)
            raise WebhookSignatureError("Invalid webhook signature") from e

        event_type = event["type"]
        session = event["data"]["object"]
        logger.info(
            "Webhook received",
            event_id=_field(event, "id"),
            event_type=event_type,
            session_id=_field(session, "id"),
        )

        if event_type == SESSION_COMPLETED:
            with log_performance(logger, "webhook_reconcile", session_id=_field(session, "id")):
                result = await self.reconcile(session)
            return {"received": True, "order_id": result.order.id}

        if event_type == SESSION_EXPIRED:
            logger.info(
                "Checkout session expired without payment",
                session_id=_field(session, "id"),
                user_id=_field(_field(session, "metadata"), "userId"),
            )
            return {"received": True}

        logger.debug("Ignoring unhandled webhook event", event_type=event_type)
        return {"received": True}

    async def verify_session(
        self, session_id: str, user: Optional[User] = None
    ) -> ReconciliationResult:
        """
        Reconcile a session from the browser's return trip.

        A session started by a signed-in user can only be verified by that
        user; guest sessions are verified by session id alone.

        Args:
            session_id: Checkout session id from the success redirect
            user: Authenticated caller, if any

        Raises:
            SessionAccessDeniedError: If the session belongs to another user
            PaymentNotCompletedError: If the session is not paid
            InvalidOrderIntentError: If the session carries no order
            StripeClientError: If the session cannot be retrieved
        """
        existing = await self.orders.get_by_session_id(session_id)
        if existing is not None:
            self._check_owner(session_id, existing.user_id, user)
            logger.info(
                "Session already reconciled",
                session_id=session_id,
                order_id=str(existing.id),
            )
            return ReconciliationResult(order=existing, created=False)

        session = await self.stripe_client.retrieve_checkout_session(session_id)
        self._check_owner(
            session_id, _field(_field(session, "metadata"), "userId"), user
        )
        payment_status = _field(session, "payment_status")
        if payment_status not in PAID_STATUSES:
            logger.info(
                "Session verification before payment completed",
                session_id=session_id,
                payment_status=payment_status,
            )
            raise PaymentNotCompletedError(
                "Payment not completed",
                session_id=session_id,
                payment_status=payment_status,
            )

        return await self.reconcile(session)

    async def reconcile(self, session: Any) -> ReconciliationResult:
        """
        Create the order for a paid session unless it already exists.

        Args:
            session: Stripe Checkout Session object

        Returns:
            The order and whether this call created it
        """
        session_id = session["id"]

        existing = await self.orders.get_by_session_id(session_id)
        if existing is not None:
            logger.info(
                "Order already exists for session",
                session_id=session_id,
                order_id=str(existing.id),
            )
            return ReconciliationResult(order=existing, created=False)

        try:
            intent = OrderIntent.from_metadata(_field(session, "metadata"))
        except InvalidOrderIntent as e:
            logger.error(
                "Session metadata cannot be decoded",
                session_id=session_id,
                reason=str(e),
                details=e.context,
            )
            raise InvalidOrderIntentError(
                "Session does not describe an order", session_id=session_id
            ) from e

        order = build_order(
            intent,
            payment_method=PaymentMethod.STRIPE,
            payment_status=PaymentStatus.COMPLETED,
            currency=self.settings.currency,
            session_id=session_id,
            payment_intent_id=self._payment_intent_id(session),
            customer_email=await self._customer_email(session, intent),
        )

        try:
            await self.orders.add(order)
        except DuplicateOrderError:
            winner = await self.orders.get_by_session_id(session_id)
            if winner is None:
                raise
            logger.info(
                "Concurrent reconciliation lost the insert race",
                session_id=session_id,
                order_id=str(winner.id),
            )
            return ReconciliationResult(order=winner, created=False)

        for item in order.items:
            if not await self.inventory.decrement_stock(item.product_id, item.quantity):
                # Payment is already captured; the order stands and stock is reviewed by hand.
                logger.error(
                    "Insufficient stock for paid order",
                    order_id=str(order.id),
                    product_id=str(item.product_id),
                    quantity=item.quantity,
                )

        if intent.user_id:
            await self.inventory.clear_cart(intent.user_id)
        if order.coupon_code:
            await self.inventory.increment_coupon_usage(order.coupon_code)

        await self.orders.commit()

        logger.info(
            "Order created from paid session",
            session_id=session_id,
            order_id=str(order.id),
            order_number=order.order_number,
            total=str(order.total),
        )
        self.notifier.schedule_order_confirmation(order)
        return ReconciliationResult(order=order, created=True)

    @staticmethod
    def _check_owner(session_id: str, owner_id: Any, user: Optional[User]) -> None:
        if not owner_id:
            return
        if user is None or str(user.id) != str(owner_id):
            logger.warning(
                "Session verification by another user refused",
                session_id=session_id,
                user_id=str(user.id) if user else None,
            )
            raise SessionAccessDeniedError(
                "Checkout session belongs to another account", session_id=session_id
            )

    @staticmethod
    def _payment_intent_id(session: Any) -> Optional[str]:
        payment_intent = _field(session, "payment_intent")
        if payment_intent is None or isinstance(payment_intent, str):
            return payment_intent
        return _field(payment_intent, "id")

    async def _customer_email(self, session: Any, intent: OrderIntent) -> Optional[str]:
        email = _field(_field(session, "customer_details"), "email") or _field(
            session, "customer_email"
        )
        if email or not intent.user_id:
            return email
        user = await self.orders.get_user(uuid.UUID(intent.user_id))
        return user.email if user else None
