"""
Order data access repository with transaction support.

This module implements the OrderRepository class providing async methods for
inserting orders, looking them up by id or payment session, listing and
aggregating them for administrators, and committing the unit of work shared
with the inventory repository. The insert path turns a violation of the
payment session unique constraint into DuplicateOrderError so that callers
can treat it as "already created".
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.models.order import (
    Order,
    OrderStatus,
    PaymentStatus,
)
from storefront.database.models.user import User

logger = get_logger(__name__)

SESSION_ID_CONSTRAINT = "uq_orders_payment_session_id"

# Orders left out of revenue in statistics
REVENUE_EXCLUDED_STATUSES = (
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
    OrderStatus.FAILED,
)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class DuplicateOrderError(OrderCreationError):
    """Raised when an order already exists for the payment session."""

    pass


class OrderRepository:
    """
    Repository for order data access operations.

    Provides async methods for order persistence with filtering, pagination
    and statistics. Shares its session, and therefore its transaction, with
    the inventory repository.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def add(self, order: Order) -> Order:
        """
        Insert an order with its items and flush.

        The flush makes the payment session unique constraint fire here,
        before any stock or coupon counters are touched.

        Args:
            order: Fully populated order

        Returns:
            The flushed order

        Raises:
            DuplicateOrderError: If an order exists for the same payment session
            OrderCreationError: If the insert fails for another reason
        """
        self.session.add(order)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            if SESSION_ID_CONSTRAINT in str(e.orig):
                logger.info(
                    "Order already exists for payment session",
                    session_id=order.payment_session_id,
                )
                raise DuplicateOrderError(
                    "Order already exists for payment session",
                    session_id=order.payment_session_id,
                ) from e
            logger.error(
                "Order creation failed - integrity error",
                error=str(e),
                order_number=order.order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                order_number=order.order_number,
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - database error",
                error=str(e),
                order_number=order.order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                order_number=order.order_number,
                error=str(e),
            ) from e

        logger.info(
            "Order inserted",
            order_id=str(order.id),
            order_number=order.order_number,
            item_count=len(order.items),
        )
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID with items, refunds and history loaded.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            return await self.session.get(Order, order_id)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order", order_id=str(order_id), error=str(e)
            ) from e

    async def get_for_update(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID and lock its row until the transaction ends.

        Concurrent status changes and refunds of the same order queue up
        behind the lock and then see the committed state.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order)
                .where(Order.id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to lock order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to lock order", order_id=str(order_id), error=str(e)
            ) from e

    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        """
        Get the order created for a payment session, if any.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order).where(Order.payment_session_id == session_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order by session", session_id=session_id, error=str(e)
            )
            raise OrderRepositoryError(
                "Failed to fetch order by session", session_id=session_id, error=str(e)
            ) from e

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def list_orders(
        self,
        user_id: Optional[uuid.UUID] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Order], int]:
        """
        List orders, newest first, with filters and pagination.

        Args:
            user_id: Restrict to one customer
            status: Restrict to one status
            search: Case-insensitive order number fragment
            start_date: Created on or after
            end_date: Created on or before
            skip: Number of records to skip
            limit: Maximum number of records to return

        Returns:
            Tuple of (orders, total_count)

        Raises:
            OrderRepositoryError: If query fails
        """
        conditions = []
        if user_id:
            conditions.append(Order.user_id == user_id)
        if status:
            conditions.append(Order.status == status)
        if search:
            conditions.append(Order.order_number.ilike(f"%{search.strip()}%"))
        if start_date:
            conditions.append(Order.created_at >= start_date)
        if end_date:
            conditions.append(Order.created_at <= end_date)

        try:
            result = await self.session.execute(
                select(Order)
                .where(*conditions)
                .order_by(Order.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
            count_result = await self.session.execute(
                select(func.count()).select_from(Order).where(*conditions)
            )
            return result.scalars().all(), count_result.scalar_one()
        except SQLAlchemyError as e:
            logger.error("Failed to list orders", error=str(e))
            raise OrderRepositoryError("Failed to list orders", error=str(e)) from e

    async def get_statistics(self, since: datetime) -> dict[str, Any]:
        """
        Aggregate order counts and revenue for orders created since a time.

        Revenue counts completed payments of orders that were not cancelled,
        refunded or failed.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            total_result = await self.session.execute(
                select(func.count()).select_from(Order).where(Order.created_at >= since)
            )
            status_result = await self.session.execute(
                select(Order.status, func.count())
                .where(Order.created_at >= since)
                .group_by(Order.status)
            )
            revenue_result = await self.session.execute(
                select(func.coalesce(func.sum(Order.total), 0)).where(
                    Order.created_at >= since,
                    Order.payment_status == PaymentStatus.COMPLETED,
                    Order.status.not_in(REVENUE_EXCLUDED_STATUSES),
                )
            )
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order statistics", error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order statistics", error=str(e)
            ) from e

        return {
            "total_orders": total_result.scalar_one(),
            "status_breakdown": {
                OrderStatus(status).value: count for status, count in status_result.all()
            },
            "revenue": Decimal(revenue_result.scalar_one()),
        }

    async def commit(self) -> None:
        """
        Commit the current unit of work.

        Raises:
            OrderRepositoryError: If the commit fails
        """
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Transaction commit failed", error=str(e))
            raise OrderRepositoryError("Transaction commit failed", error=str(e)) from e

    async def rollback(self) -> None:
        await self.session.rollback()
