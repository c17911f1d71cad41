"""Order state machine implementation with transition validation.

This module defines the allowed order status transitions and the
OrderStateMachine class that applies them, stamping the per-status
timestamps and notes and recording every change in the order's status
history.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from storefront.core.logging import get_logger
from storefront.database.models.order import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
)

logger = get_logger(__name__)


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED,
        OrderStatus.RETURNED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.DELIVERED: {
        OrderStatus.RETURNED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.RETURNED: {
        OrderStatus.REFUNDED,
    },
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.FAILED: set(),
}


def validate_order_status_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """
    Check whether an order may move from ``current`` to ``new``.

    Args:
        current: Current order status
        new: Requested order status

    Returns:
        True if transition is allowed
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.current_state = current_state
        self.target_state = target_state
        self.context = {
            "current_status": current_state.value,
            "target_status": target_state.value,
            **context,
        }


class OrderStateMachine:
    """State machine for order lifecycle transitions.

    Validates a transition against the transition table, updates the
    status and its timestamp fields, and appends a history entry. It never
    commits; the calling service owns the transaction.
    """

    def __init__(self) -> None:
        self._side_effects: Dict[
            OrderStatus,
            Callable[[Order, datetime, Optional[str], Optional[str]], None],
        ] = {
            OrderStatus.CONFIRMED: self._effect_confirmed,
            OrderStatus.PROCESSING: self._effect_processing,
            OrderStatus.SHIPPED: self._effect_shipped,
            OrderStatus.DELIVERED: self._effect_delivered,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def validate_transition(self, order: Order, target_status: OrderStatus) -> None:
        """Validate if transition to target status is allowed.

        Raises:
            StateTransitionError: If transition is invalid
        """
        current_status = order.status
        if not validate_order_status_transition(current_status, target_status):
            allowed = get_allowed_order_transitions(current_status)
            raise StateTransitionError(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                allowed_transitions=sorted(s.value for s in allowed),
            )

    def can_transition(self, order: Order, target_status: OrderStatus) -> bool:
        return validate_order_status_transition(order.status, target_status)

    def apply_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OrderStatus:
        """Apply a validated state transition to an order.

        Args:
            order: Order instance to transition
            target_status: Target status to transition to
            changed_by: Actor recorded in history
            notes: Notes stored on the status field and in history
            now: Transition time

        Returns:
            The previous status

        Raises:
            StateTransitionError: If transition is invalid
        """
        self.validate_transition(order, target_status)

        now = now or datetime.now(timezone.utc)
        old_status = order.status
        order.status = target_status

        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            side_effect(order, now, changed_by, notes)

        order.status_history.append(
            OrderStatusHistory(
                from_status=old_status.value,
                to_status=target_status.value,
                changed_by=changed_by,
                notes=notes,
            )
        )

        logger.info(
            "Order status changed",
            order_id=str(order.id),
            transition=f"{old_status.value}->{target_status.value}",
            changed_by=changed_by,
        )
        return old_status

    # Side effects

    @staticmethod
    def _effect_confirmed(order: Order, now: datetime, changed_by, notes) -> None:
        order.confirmed_at = now

    @staticmethod
    def _effect_processing(order: Order, now: datetime, changed_by, notes) -> None:
        order.processing_at = now
        if notes:
            order.processing_notes = notes

    @staticmethod
    def _effect_shipped(order: Order, now: datetime, changed_by, notes) -> None:
        order.shipped_at = now
        if notes:
            order.shipping_notes = notes

    @staticmethod
    def _effect_delivered(order: Order, now: datetime, changed_by, notes) -> None:
        order.delivered_at = now
        if notes:
            order.delivery_notes = notes
        # Cash is collected on delivery
        if (
            order.payment_method == PaymentMethod.COD
            and order.payment_status == PaymentStatus.PENDING
        ):
            order.payment_status = PaymentStatus.COMPLETED
            order.paid_at = now

    @staticmethod
    def _effect_cancelled(order: Order, now: datetime, changed_by, notes) -> None:
        order.cancelled_at = now
        order.cancelled_by = changed_by
        if notes:
            order.cancellation_reason = notes
