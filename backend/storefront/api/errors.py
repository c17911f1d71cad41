"""
Translation of service exceptions into HTTP responses.

Routers catch the domain exception families and re-raise them through
``to_http_exception`` so every endpoint answers with the same
``{"message", "code", "context"}`` error body.
"""

from typing import Any, Union

from fastapi import HTTPException, status

from storefront.core.logging import get_logger
from storefront.services.checkout.pricing_engine import CheckoutError
from storefront.services.orders.service import OrderNotFoundError, OrderServiceError
from storefront.services.orders.state_machine import StateTransitionError
from storefront.services.payments.reconciliation import (
    ReconciliationError,
    SessionAccessDeniedError,
)
from storefront.services.payments.stripe_client import (
    StripeClientError,
    StripeNotConfiguredError,
)

logger = get_logger(__name__)

DomainError = Union[
    CheckoutError,
    ReconciliationError,
    OrderServiceError,
    StateTransitionError,
    StripeClientError,
]

DOMAIN_ERRORS = (
    CheckoutError,
    ReconciliationError,
    OrderServiceError,
    StateTransitionError,
    StripeClientError,
)


def _detail(message: str, code: str, context: dict[str, Any]) -> dict[str, Any]:
    return {"message": message, "code": code, "context": context}


def to_http_exception(e: DomainError) -> HTTPException:
    """
    Map a service exception to an HTTPException.

    Validation failures become 400, another user's checkout session 403,
    missing orders 404, an unconfigured payment provider 503 and any other
    provider failure 502.
    """
    if isinstance(e, StripeNotConfiguredError):
        logger.error("Payment system not configured", code=e.code)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=_detail("Payment system is not configured", e.code or "NOT_CONFIGURED", {}),
        )

    if isinstance(e, StripeClientError):
        logger.error("Payment provider error", error=str(e), code=e.code)
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=_detail(
                "Payment provider request failed",
                e.code or "PAYMENT_PROVIDER_ERROR",
                {},
            ),
        )

    if isinstance(e, SessionAccessDeniedError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=_detail(str(e), e.code, e.context),
        )

    if isinstance(e, OrderNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=_detail(str(e), e.code, e.context),
        )

    logger.info("Request rejected", error=str(e), code=e.code)
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=_detail(str(e), e.code, e.context),
    )
