"""
FastAPI dependencies for authentication, authorization and services.

This module provides dependency functions for bearer token authentication,
the administrator guard, database session management and construction of
the request-scoped services. Process-wide collaborators (the Stripe client
and the order notifier) are created by the application lifespan and read
from ``app.state``.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger, set_user_id
from storefront.core.security import TokenError, decode_token
from storefront.database.connection import get_db
from storefront.database.models.user import User
from storefront.services.checkout.repository import InventoryRepository
from storefront.services.checkout.service import CheckoutService
from storefront.services.notifications.service import OrderNotifier
from storefront.services.orders.repository import OrderRepository
from storefront.services.orders.service import OrderService
from storefront.services.payments.reconciliation import ReconciliationService
from storefront.services.payments.stripe_client import StripeClient

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DatabaseSession,
) -> User:
    """
    Validate bearer token and retrieve current authenticated user.

    Raises:
        HTTPException: 401 if token is invalid, expired, or user not found;
            403 if the account is inactive
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        payload = decode_token(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code)
        raise credentials_exception from e

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        logger.warning("Authentication failed: Invalid subject claim")
        raise credentials_exception

    try:
        user = await db.get(User, user_id)
    except SQLAlchemyError as e:
        logger.error("Database error during user retrieval", user_id=str(user_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from e

    if user is None:
        logger.warning("Authentication failed: User not found", user_id=str(user_id))
        raise credentials_exception

    if not user.is_active:
        logger.warning("Authentication failed: User account is inactive", user_id=str(user.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Inactive user account",
        )

    set_user_id(str(user.id))
    return user


async def get_optional_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DatabaseSession,
) -> Optional[User]:
    """
    Retrieve current user if authenticated, otherwise return None.

    Used by checkout, which also serves guests.
    """
    if credentials is None:
        return None

    try:
        return await get_current_user(credentials, db)
    except HTTPException:
        logger.debug("Optional authentication failed, proceeding as anonymous")
        return None


async def get_current_admin(
    current_user: Annotated[User, Depends(get_current_user)],
) -> User:
    """
    Dependency for endpoints requiring admin access.

    Raises:
        HTTPException: 403 if the user is not an administrator
    """
    if not current_user.is_admin:
        logger.warning(
            "Access denied: Insufficient permissions",
            user_id=str(current_user.id),
            user_role=current_user.role.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return current_user


CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentAdmin = Annotated[User, Depends(get_current_admin)]
OptionalUser = Annotated[Optional[User], Depends(get_optional_user)]


def get_stripe_client(request: Request) -> StripeClient:
    return request.app.state.stripe_client


def get_notifier(request: Request) -> OrderNotifier:
    return request.app.state.notifier


def get_checkout_service(
    db: DatabaseSession,
    settings: AppSettings,
    stripe_client: Annotated[StripeClient, Depends(get_stripe_client)],
    notifier: Annotated[OrderNotifier, Depends(get_notifier)],
) -> CheckoutService:
    return CheckoutService(
        orders=OrderRepository(db),
        inventory=InventoryRepository(db),
        stripe_client=stripe_client,
        notifier=notifier,
        settings=settings,
    )


def get_reconciliation_service(
    db: DatabaseSession,
    settings: AppSettings,
    stripe_client: Annotated[StripeClient, Depends(get_stripe_client)],
    notifier: Annotated[OrderNotifier, Depends(get_notifier)],
) -> ReconciliationService:
    return ReconciliationService(
        orders=OrderRepository(db),
        inventory=InventoryRepository(db),
        stripe_client=stripe_client,
        notifier=notifier,
        settings=settings,
    )


def get_order_service(
    db: DatabaseSession,
    settings: AppSettings,
    stripe_client: Annotated[StripeClient, Depends(get_stripe_client)],
    notifier: Annotated[OrderNotifier, Depends(get_notifier)],
) -> OrderService:
    return OrderService(
        orders=OrderRepository(db),
        inventory=InventoryRepository(db),
        notifier=notifier,
        settings=settings,
        stripe_client=stripe_client,
    )
