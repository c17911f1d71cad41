"""
Checkout and payment API endpoints.

This module implements the FastAPI router for starting a checkout (hosted
Stripe session, zero-total order or cash-on-delivery order), verifying the
session the browser returns with, and receiving Stripe webhooks.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from storefront.api.deps import (
    CurrentUser,
    OptionalUser,
    get_checkout_service,
    get_reconciliation_service,
)
from storefront.api.errors import DOMAIN_ERRORS, to_http_exception
from storefront.core.config import get_settings
from storefront.core.logging import get_logger
from storefront.core.security import limiter
from storefront.schemas.orders import OrderResponse
from storefront.schemas.payments import (
    CheckoutRequest,
    CheckoutSessionResponse,
    VerifySessionRequest,
    WebhookResponse,
)
from storefront.services.checkout.service import CheckoutItem, CheckoutService
from storefront.services.payments.reconciliation import ReconciliationService

logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(prefix="/payments", tags=["payments"])


def _checkout_items(payload: CheckoutRequest) -> list[CheckoutItem]:
    return [
        CheckoutItem(product_id=item.product_id, quantity=item.quantity)
        for item in payload.items
    ]


@router.post(
    "/checkout-session",
    response_model=CheckoutSessionResponse,
    summary="Start card checkout",
    description=(
        "Create a hosted Stripe Checkout session for the cart. Carts whose "
        "total is zero are placed immediately and no session is created."
    ),
)
@limiter.limit(settings.checkout_rate_limit)
async def create_checkout_session(
    request: Request,
    payload: CheckoutRequest,
    current_user: OptionalUser,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
) -> CheckoutSessionResponse:
    """
    Start a checkout.

    Raises:
        HTTPException: 400 for cart validation errors, 502/503 for payment
            provider failures
    """
    logger.info(
        "Checkout requested",
        user_id=str(current_user.id) if current_user else None,
        item_count=len(payload.items),
        coupon_code=payload.coupon_code,
    )

    try:
        result = await service.create_checkout_session(
            items=_checkout_items(payload),
            coupon_code=payload.coupon_code,
            shipping_address=payload.shipping_address,
            user=current_user,
            customer_email=payload.customer_email,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e

    return CheckoutSessionResponse(
        session_id=result.session_id,
        url=result.url,
        total=result.total,
        order=OrderResponse.from_order(result.order) if result.order else None,
    )


@router.post(
    "/cod-order",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place cash on delivery order",
)
@limiter.limit(settings.checkout_rate_limit)
async def create_cod_order(
    request: Request,
    payload: CheckoutRequest,
    current_user: CurrentUser,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
) -> OrderResponse:
    """
    Place an order paid in cash on delivery for the signed-in user.

    Raises:
        HTTPException: 400 if a product does not support cash on delivery
            or the cart is otherwise invalid, 401 without a valid token
    """
    try:
        order = await service.create_cod_order(
            items=_checkout_items(payload),
            coupon_code=payload.coupon_code,
            shipping_address=payload.shipping_address,
            user=current_user,
            customer_email=payload.customer_email,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e

    return OrderResponse.from_order(order)


@router.post(
    "/verify-session",
    response_model=OrderResponse,
    summary="Verify returned checkout session",
    description=(
        "Create or fetch the order for a paid Checkout session. Used by the "
        "success page in case the webhook has not arrived yet."
    ),
)
async def verify_session(
    payload: VerifySessionRequest,
    current_user: OptionalUser,
    service: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
) -> OrderResponse:
    """
    Raises:
        HTTPException: 400 if the session is unpaid or carries no order,
            403 if it was started by another user
    """
    try:
        result = await service.verify_session(payload.session_id, user=current_user)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e

    return OrderResponse.from_order(result.order)


@router.post(
    "/webhook",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Stripe webhook",
    include_in_schema=False,
)
async def stripe_webhook(
    request: Request,
    service: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
    stripe_signature: Annotated[Optional[str], Header(alias="Stripe-Signature")] = None,
) -> WebhookResponse:
    """
    Receive Stripe events.

    The raw body is verified against the webhook signing secret before
    anything else happens.

    Raises:
        HTTPException: 400 for invalid signatures or undecodable sessions
    """
    payload = await request.body()

    try:
        result = await service.handle_webhook(payload, stripe_signature)
    except DOMAIN_ERRORS as e:
        http_error = to_http_exception(e)
        if http_error.status_code == status.HTTP_400_BAD_REQUEST:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Webhook rejected", "code": e.code, "context": {}},
            ) from e
        raise http_error from e

    return WebhookResponse(**result)
