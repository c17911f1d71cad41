"""
Inventory data access for checkout and order reconciliation.

This module implements the InventoryRepository class for the shared
mutable counters touched by order handling: product stock, coupon usage
and the purchasing user's cart. Counter updates are single conditional
UPDATE statements so concurrent requests never read-modify-write the same
row. Nothing here commits; callers own the transaction.
"""

import uuid
from typing import Any, Iterable, Optional, Sequence, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.models.cart import Cart, CartItem
from storefront.database.models.coupon import Coupon
from storefront.database.models.product import Product

logger = get_logger(__name__)

IdLike = Union[uuid.UUID, str]


class InventoryRepositoryError(Exception):
    """Base exception for inventory repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


def _as_uuid(value: IdLike) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class InventoryRepository:
    """
    Repository for products, coupons and carts.

    Attributes:
        session: Async database session shared with the order repository
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_products(self, product_ids: Iterable[IdLike]) -> Sequence[Product]:
        """
        Load active products by id.

        Inactive and unknown ids are silently absent from the result; the
        caller compares counts to detect them.

        Raises:
            InventoryRepositoryError: If the query fails
        """
        ids = [_as_uuid(pid) for pid in product_ids]
        try:
            result = await self.session.execute(
                select(Product).where(Product.id.in_(ids), Product.is_active.is_(True))
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to load products", error=str(e), product_count=len(ids))
            raise InventoryRepositoryError("Failed to load products", error=str(e)) from e

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        """
        Look up a coupon by code, case-insensitively.

        Raises:
            InventoryRepositoryError: If the query fails
        """
        try:
            result = await self.session.execute(
                select(Coupon).where(Coupon.code == code.strip().upper())
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to load coupon", code=code, error=str(e))
            raise InventoryRepositoryError("Failed to load coupon", code=code) from e

    async def decrement_stock(self, product_id: IdLike, quantity: int) -> bool:
        """
        Atomically decrement stock if enough is available.

        Args:
            product_id: Product to decrement
            quantity: Units sold

        Returns:
            True if the stock was decremented, False if it was insufficient
        """
        result = await self.session.execute(
            update(Product)
            .where(Product.id == _as_uuid(product_id), Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        decremented = result.rowcount == 1
        logger.info(
            "Stock decrement",
            product_id=str(product_id),
            quantity=quantity,
            applied=decremented,
        )
        return decremented

    async def restore_stock(self, product_id: IdLike, quantity: int) -> None:
        """Return units to stock after a cancellation."""
        await self.session.execute(
            update(Product)
            .where(Product.id == _as_uuid(product_id))
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        logger.info("Stock restored", product_id=str(product_id), quantity=quantity)

    async def increment_coupon_usage(self, code: str) -> bool:
        """
        Increment a coupon's usage counter by one.

        Returns:
            True if a coupon row was updated
        """
        result = await self.session.execute(
            update(Coupon)
            .where(Coupon.code == code.strip().upper())
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        incremented = result.rowcount == 1
        if not incremented:
            logger.warning("Coupon usage not incremented, coupon missing", code=code)
        return incremented

    async def clear_cart(self, user_id: IdLike) -> bool:
        """
        Empty a user's cart and drop its coupon.

        Runs in a savepoint so a failure here never aborts the order that
        triggered it.

        Returns:
            True if the cart was cleared
        """
        try:
            async with self.session.begin_nested():
                cart_ids = select(Cart.id).where(Cart.user_id == _as_uuid(user_id))
                await self.session.execute(
                    delete(CartItem)
                    .where(CartItem.cart_id.in_(cart_ids))
                    .execution_options(synchronize_session=False)
                )
                await self.session.execute(
                    update(Cart)
                    .where(Cart.user_id == _as_uuid(user_id))
                    .values(coupon_code=None, coupon_discount=0)
                    .execution_options(synchronize_session=False)
                )
            return True
        except SQLAlchemyError as e:
            logger.warning("Failed to clear cart", user_id=str(user_id), error=str(e))
            return False
