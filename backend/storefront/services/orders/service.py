"""
Order service orchestrating the order lifecycle after placement.

This module implements the OrderService class for customer and
administrator order operations: listing and viewing orders, cancellation
with stock restoration, the return request flow, refunds through Stripe or
recorded manually for cash-on-delivery orders, payment status overrides and
order statistics. Status changes go through the OrderStateMachine. Every
mutation locks the order row first and commits its own unit of work, so
concurrent changes to one order run one after the other. Customer emails
are scheduled only after the commit succeeds.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Sequence

from storefront.core.config import Settings
from storefront.core.logging import get_logger
from storefront.core.money import to_cents, to_decimal
from storefront.database.models.order import (
    Order,
    OrderRefund,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ReturnStatus,
)
from storefront.database.models.user import User
from storefront.services.checkout.repository import InventoryRepository
from storefront.services.notifications.service import OrderNotifier
from storefront.services.orders.repository import OrderRepository
from storefront.services.orders.state_machine import OrderStateMachine
from storefront.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)

STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90}

MAX_PAGE_SIZE = 100


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    code = "ORDER_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class OrderNotFoundError(OrderServiceError):
    """Raised when an order does not exist or is not visible to the caller."""

    code = "ORDER_NOT_FOUND"


class OrderValidationError(OrderServiceError):
    """Raised when an order operation receives invalid input."""

    code = "ORDER_VALIDATION_ERROR"


class CancellationNotAllowedError(OrderServiceError):
    """Raised when a customer tries to cancel an order past confirmation."""

    code = "CANCELLATION_NOT_ALLOWED"


class ReturnNotAllowedError(OrderServiceError):
    """Raised when a return request or decision is not possible."""

    code = "RETURN_NOT_ALLOWED"


class RefundError(OrderServiceError):
    """Raised when a refund is invalid."""

    code = "REFUND_ERROR"


class OrderService:
    """
    Order lifecycle operations for customers and administrators.

    Attributes:
        orders: Order repository, owner of the transaction
        inventory: Inventory repository for stock restoration
        notifier: Order email notifier
        settings: Application settings
        stripe_client: Stripe client for card refunds
        state_machine: Order status transition rules
    """

    def __init__(
        self,
        orders: OrderRepository,
        inventory: InventoryRepository,
        notifier: OrderNotifier,
        settings: Settings,
        stripe_client: Optional[StripeClient] = None,
        state_machine: Optional[OrderStateMachine] = None,
    ):
        self.orders = orders
        self.inventory = inventory
        self.notifier = notifier
        self.settings = settings
        self.stripe_client = stripe_client
        self.state_machine = state_machine or OrderStateMachine()

    # Customer operations

    async def list_user_orders(
        self,
        user: User,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
    ) -> tuple[Sequence[Order], int]:
        page, limit = self._paginate(page, limit)
        return await self.orders.list_orders(
            user_id=user.id,
            status=status,
            skip=(page - 1) * limit,
            limit=limit,
        )

    async def get_user_order(self, order_id: uuid.UUID, user: User) -> Order:
        """
        Get one of the user's orders.

        Raises:
            OrderNotFoundError: If the order does not exist or belongs to someone else
        """
        order = await self.orders.get_by_id(order_id)
        if order is None or order.user_id != user.id:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        user: User,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel an order on the customer's behalf and restore its stock.

        Raises:
            OrderNotFoundError: If the order is not the user's
            CancellationNotAllowedError: If the order is past confirmation
        """
        async with self._locked_order(order_id, user) as order:
            if not order.status.can_user_cancel:
                raise CancellationNotAllowedError(
                    f"Orders in status {order.status.value} cannot be cancelled",
                    order_id=str(order.id),
                    status=order.status.value,
                )

            self.state_machine.apply_transition(
                order,
                OrderStatus.CANCELLED,
                changed_by=user.email,
                notes=reason or "Cancelled by customer",
            )
            await self._restore_stock(order)
            await self.orders.commit()

        logger.info("Order cancelled by customer", order_id=str(order.id), user_id=str(user.id))
        self.notifier.schedule_cancellation(order)
        return order

    async def request_return(
        self,
        order_id: uuid.UUID,
        user: User,
        reason: str,
        items: Optional[list[dict[str, Any]]] = None,
        bank_details: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Open a return request for a delivered order.

        Args:
            order_id: Order to return
            user: Requesting customer
            reason: Customer's reason
            items: ``{"product_id", "quantity"}`` entries, all items when omitted
            bank_details: Refund account, required for cash-on-delivery orders
            now: Request time

        Raises:
            OrderNotFoundError: If the order is not the user's
            ReturnNotAllowedError: If the order cannot be returned
        """
        now = now or datetime.now(timezone.utc)
        async with self._locked_order(order_id, user) as order:
            if order.status != OrderStatus.DELIVERED:
                raise ReturnNotAllowedError(
                    "Only delivered orders can be returned",
                    order_id=str(order.id),
                    status=order.status.value,
                )
            if order.return_status is not None:
                raise ReturnNotAllowedError(
                    "A return has already been requested for this order",
                    order_id=str(order.id),
                    return_status=order.return_status.value,
                )
            if not order.return_window_open(now, self.settings.return_window_days):
                raise ReturnNotAllowedError(
                    f"Return window of {self.settings.return_window_days} days has closed",
                    order_id=str(order.id),
                )
            if order.payment_method == PaymentMethod.COD and not bank_details:
                raise ReturnNotAllowedError(
                    "Bank details are required to refund cash on delivery orders",
                    order_id=str(order.id),
                )

            order.return_status = ReturnStatus.REQUESTED
            order.return_reason = reason
            order.return_items = self._return_items(order, items)
            order.return_bank_details = (
                bank_details if order.payment_method == PaymentMethod.COD else None
            )
            order.return_requested_at = now
            order.return_decided_at = None
            order.return_decided_by = None
            order.return_notes = None
            await self.orders.commit()

        logger.info(
            "Return requested",
            order_id=str(order.id),
            item_count=len(order.return_items),
        )
        return order

    async def cancel_return_request(self, order_id: uuid.UUID, user: User) -> Order:
        """
        Withdraw a pending return request.

        Raises:
            ReturnNotAllowedError: If no return is awaiting a decision
        """
        async with self._locked_order(order_id, user) as order:
            if order.return_status != ReturnStatus.REQUESTED:
                raise ReturnNotAllowedError(
                    "Only pending return requests can be cancelled",
                    order_id=str(order.id),
                    return_status=order.return_status.value if order.return_status else None,
                )

            order.return_status = None
            order.return_reason = None
            order.return_items = None
            order.return_bank_details = None
            order.return_requested_at = None
            await self.orders.commit()

        logger.info("Return request withdrawn", order_id=str(order.id))
        return order

    # Administrator operations

    async def list_orders(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> tuple[Sequence[Order], int]:
        page, limit = self._paginate(page, limit)
        return await self.orders.list_orders(
            status=status,
            search=search,
            start_date=start_date,
            end_date=end_date,
            skip=(page - 1) * limit,
            limit=limit,
        )

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def update_status(
        self,
        order_id: uuid.UUID,
        status: OrderStatus,
        admin: User,
        notes: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> Order:
        """
        Move an order to a new status.

        Cancellation restores stock. Shipping may record a tracking number.

        Raises:
            OrderNotFoundError: If the order does not exist
            StateTransitionError: If the transition is not allowed
        """
        async with self._locked_order(order_id) as order:
            self.state_machine.apply_transition(
                order, status, changed_by=admin.email, notes=notes
            )

            if status == OrderStatus.SHIPPED and tracking_number:
                order.tracking_number = tracking_number
            if status == OrderStatus.CANCELLED:
                await self._restore_stock(order)

            await self.orders.commit()

        if status == OrderStatus.CANCELLED:
            self.notifier.schedule_cancellation(order)
        else:
            self.notifier.schedule_status_update(order, notes=notes)
        return order

    async def update_payment_status(
        self,
        order_id: uuid.UUID,
        status: PaymentStatus,
        admin: User,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Override an order's payment status.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        now = now or datetime.now(timezone.utc)
        async with self._locked_order(order_id) as order:
            previous = order.payment_status
            order.payment_status = status

            if status == PaymentStatus.COMPLETED:
                order.paid_at = order.paid_at or now
            elif status == PaymentStatus.FAILED:
                order.payment_failed_at = now
                order.payment_failure_reason = reason

            await self.orders.commit()
        logger.info(
            "Payment status updated",
            order_id=str(order.id),
            transition=f"{previous.value}->{status.value}",
            changed_by=admin.email,
        )
        return order

    async def handle_return_request(
        self,
        order_id: uuid.UUID,
        action: str,
        admin: User,
        notes: Optional[str] = None,
        refund_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Approve or reject a pending return.

        Approving marks the order returned and fixes the amount to refund,
        the remaining refundable amount unless given.

        Raises:
            ReturnNotAllowedError: If no return is awaiting a decision
            RefundError: If the refund amount exceeds what can be refunded
        """
        now = now or datetime.now(timezone.utc)
        if action not in ("approve", "reject"):
            raise OrderValidationError(f"Unknown return action: {action}", action=action)

        async with self._locked_order(order_id) as order:
            if order.return_status != ReturnStatus.REQUESTED:
                raise ReturnNotAllowedError(
                    "Order has no pending return request",
                    order_id=str(order.id),
                )

            if action == "approve":
                refundable = to_decimal(order.total) - order.refunded_total
                amount = to_decimal(refund_amount) if refund_amount is not None else refundable
                if amount <= 0 or amount > refundable:
                    raise RefundError(
                        "Return refund amount exceeds the refundable amount",
                        order_id=str(order.id),
                        refundable=str(refundable),
                    )
                order.return_status = ReturnStatus.APPROVED
                order.return_refund_amount = amount
                if self.state_machine.can_transition(order, OrderStatus.RETURNED):
                    self.state_machine.apply_transition(
                        order,
                        OrderStatus.RETURNED,
                        changed_by=admin.email,
                        notes=notes or "Return approved",
                        now=now,
                    )
            else:
                order.return_status = ReturnStatus.REJECTED

            order.return_decided_at = now
            order.return_decided_by = admin.email
            order.return_notes = notes
            await self.orders.commit()

        logger.info(
            "Return request decided",
            order_id=str(order.id),
            action=action,
            decided_by=admin.email,
        )
        self.notifier.schedule_status_update(order, notes=notes)
        return order

    async def process_refund(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        admin: User,
        reason: Optional[str] = None,
        method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Refund part or all of an order.

        Card orders are refunded through Stripe; other refunds, including
        bank transfers for cash-on-delivery orders, are recorded as
        completed. Once the refunds reach the order total the order moves
        to refunded, unless it is cancelled.

        Raises:
            RefundError: If the amount is invalid or the order was not paid
            StripeClientError: If Stripe rejects the refund
        """
        now = now or datetime.now(timezone.utc)
        amount = to_decimal(amount)
        if amount <= 0:
            raise RefundError("Refund amount must be positive", order_id=str(order_id))

        async with self._locked_order(order_id) as order:
            if order.payment_status != PaymentStatus.COMPLETED:
                raise RefundError(
                    "Only paid orders can be refunded",
                    order_id=str(order.id),
                    payment_status=order.payment_status.value,
                )
            refundable = to_decimal(order.total) - order.refunded_total
            if amount > refundable:
                raise RefundError(
                    "Refund exceeds the remaining refundable amount",
                    order_id=str(order.id),
                    requested=str(amount),
                    refundable=str(refundable),
                )

            method = method or (
                PaymentMethod.STRIPE.value
                if order.payment_method == PaymentMethod.STRIPE
                else "bank_transfer"
            )
            refund = OrderRefund(
                amount=amount,
                reason=reason,
                method=method,
                status=RefundStatus.COMPLETED,
                processed_at=now,
                processed_by=admin.email,
            )

            if method == PaymentMethod.STRIPE.value:
                if not order.payment_intent_id or self.stripe_client is None:
                    raise RefundError(
                        "Order has no card payment to refund",
                        order_id=str(order.id),
                    )
                stripe_refund = await self.stripe_client.create_refund(
                    payment_intent_id=order.payment_intent_id,
                    amount=to_cents(amount),
                    metadata={"orderId": str(order.id), "orderNumber": order.order_number},
                    idempotency_key=self._refund_idempotency_key(order),
                )
                refund.stripe_refund_id = stripe_refund["id"]
                refund.status = (
                    RefundStatus.COMPLETED
                    if stripe_refund["status"] == "succeeded"
                    else RefundStatus.PENDING
                )

            order.refunds.append(refund)

            if order.return_status == ReturnStatus.APPROVED:
                order.return_status = ReturnStatus.REFUNDED
                order.return_refunded_at = now

            if (
                order.refunded_total >= to_decimal(order.total)
                and order.status != OrderStatus.CANCELLED
                and self.state_machine.can_transition(order, OrderStatus.REFUNDED)
            ):
                self.state_machine.apply_transition(
                    order,
                    OrderStatus.REFUNDED,
                    changed_by=admin.email,
                    notes=reason or "Fully refunded",
                    now=now,
                )

            await self.orders.commit()

        logger.info(
            "Refund recorded",
            order_id=str(order.id),
            amount=str(amount),
            method=method,
            refund_status=refund.status.value,
            refunded_total=str(order.refunded_total),
        )
        return order

    async def mark_failed(
        self,
        order_id: uuid.UUID,
        reason: str,
        admin: User,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Mark a pending order as failed.

        Raises:
            StateTransitionError: If the order is not pending
        """
        now = now or datetime.now(timezone.utc)
        async with self._locked_order(order_id) as order:
            self.state_machine.apply_transition(
                order, OrderStatus.FAILED, changed_by=admin.email, notes=reason, now=now
            )
            order.payment_status = PaymentStatus.FAILED
            order.payment_failed_at = now
            order.payment_failure_reason = reason
            await self.orders.commit()
        return order

    async def get_stats(self, period: str = "30d", now: Optional[datetime] = None) -> dict[str, Any]:
        """
        Order counts and revenue for the last 7, 30 or 90 days.

        Raises:
            OrderValidationError: If the period is not supported
        """
        days = STATS_PERIODS.get(period)
        if days is None:
            raise OrderValidationError(
                f"Unsupported period: {period}",
                allowed=sorted(STATS_PERIODS),
            )
        since = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        stats = await self.orders.get_statistics(since)
        return {"period": period, "since": since, **stats}

    # Helpers

    @asynccontextmanager
    async def _locked_order(
        self, order_id: uuid.UUID, user: Optional[User] = None
    ) -> AsyncIterator[Order]:
        """
        Lock an order row for a read-modify-write.

        The lock is held until the block commits. If the block raises, the
        transaction is rolled back, which also releases the lock.

        Args:
            order_id: Order to lock
            user: Owner the order must belong to, any order when omitted

        Raises:
            OrderNotFoundError: If the order does not exist or is not the user's
        """
        order = await self.orders.get_for_update(order_id)
        if order is None or (user is not None and order.user_id != user.id):
            await self.orders.rollback()
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        try:
            yield order
        except Exception:
            await self.orders.rollback()
            raise

    @staticmethod
    def _refund_idempotency_key(order: Order) -> str:
        # Stable per refund slot of the order
        return f"refund_{order.id}_{len(order.refunds)}"

    @staticmethod
    def _paginate(page: int, limit: int) -> tuple[int, int]:
        return max(1, page), min(max(1, limit), MAX_PAGE_SIZE)

    async def _restore_stock(self, order: Order) -> None:
        for item in order.items:
            await self.inventory.restore_stock(item.product_id, item.quantity)

    @staticmethod
    def _return_items(
        order: Order, items: Optional[list[dict[str, Any]]]
    ) -> list[dict[str, Any]]:
        purchased = {item.product_id: item for item in order.items}
        if not items:
            return [
                {"product_id": str(item.product_id), "title": item.title, "quantity": item.quantity}
                for item in order.items
            ]

        selected = []
        for entry in items:
            product_id = uuid.UUID(str(entry["product_id"]))
            quantity = int(entry.get("quantity") or 1)
            item = purchased.get(product_id)
            if item is None:
                raise ReturnNotAllowedError(
                    "Item is not part of this order",
                    order_id=str(order.id),
                    product_id=str(product_id),
                )
            if quantity > item.quantity:
                raise ReturnNotAllowedError(
                    "Cannot return more units than were purchased",
                    order_id=str(order.id),
                    product_id=str(product_id),
                )
            selected.append(
                {"product_id": str(product_id), "title": item.title, "quantity": quantity}
            )
        return selected
