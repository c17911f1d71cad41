"""
Stripe API client wrapper with error handling and retry logic.

This module provides the StripeClient used by checkout, payment
reconciliation and refunds. A single instance is constructed by the
application lifespan and injected into services; the API key is passed on
every request rather than assigned to the ``stripe`` module globally.
Blocking SDK calls run in a worker thread so the event loop keeps serving
other requests while Stripe responds.
"""

import asyncio
from typing import Any, Callable, Mapping, Optional

import stripe
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    CardError,
    IdempotencyError,
    InvalidRequestError,
    RateLimitError,
    SignatureVerificationError,
    StripeError,
)

from storefront.core.config import Settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)


class StripeClientError(Exception):
    """Base exception for Stripe client errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        stripe_error: Optional[StripeError] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.code = code
        self.stripe_error = stripe_error
        self.context = context


class StripeNotConfiguredError(StripeClientError):
    """Exception raised when API key or webhook secret is missing."""

    pass


class StripePaymentError(StripeClientError):
    """Exception for card and payment processing errors."""

    pass


class StripeAuthenticationError(StripeClientError):
    """Exception for authentication errors."""

    pass


class StripeRateLimitError(StripeClientError):
    """Exception for rate limit errors."""

    pass


class StripeConnectionError(StripeClientError):
    """Exception for connection errors."""

    pass


class StripeSignatureError(StripeClientError):
    """Exception for webhook payloads that fail verification."""

    pass


class StripeClient:
    """
    Stripe API client with error handling and retry logic.

    Provides Checkout session creation and retrieval, one-off coupons,
    refunds and webhook verification. Transient failures (connection,
    rate limit, API errors) are retried with exponential backoff; all
    other Stripe errors are translated into StripeClientError subclasses.
    """

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 32.0,
        backoff_multiplier: float = 2.0,
    ):
        """
        Initialize Stripe client with configuration.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Backoff multiplier for exponential backoff
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier

        logger.info(
            "Stripe client initialized",
            configured=bool(api_key),
            webhook_configured=bool(webhook_secret),
            max_retries=max_retries,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeClient":
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            max_retries=settings.stripe_max_retries,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise StripeNotConfiguredError(
                "Payment system is not configured",
                code="STRIPE_NOT_CONFIGURED",
            )
        return self.api_key

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current retry attempt number (0-indexed)

        Returns:
            Backoff delay in seconds
        """
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _should_retry(self, error: StripeError, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return isinstance(error, (APIConnectionError, RateLimitError, APIError))

    async def _execute_with_retry(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute Stripe API call with exponential backoff retry logic.

        Args:
            operation: Operation name for logging
            func: Stripe API function to execute
            *args: Positional arguments for the function
            **kwargs: Keyword arguments for the function

        Returns:
            Result from Stripe API call

        Raises:
            StripeClientError: If operation fails after all retries
        """
        api_key = self._require_api_key()
        last_error: Optional[StripeError] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = await asyncio.to_thread(func, *args, api_key=api_key, **kwargs)

                if attempt > 0:
                    logger.info(
                        "Stripe operation succeeded after retry",
                        operation=operation,
                        attempt=attempt,
                    )

                return result

            except AuthenticationError as e:
                logger.error(
                    "Stripe authentication error",
                    operation=operation,
                    error=str(e),
                    code=e.code,
                )
                raise StripeAuthenticationError(
                    "Payment provider authentication failed",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except CardError as e:
                logger.warning(
                    "Stripe card error",
                    operation=operation,
                    error=str(e),
                    code=e.code,
                )
                raise StripePaymentError(
                    f"Card error: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                ) from e

            except (InvalidRequestError, IdempotencyError) as e:
                logger.error(
                    "Stripe rejected request",
                    operation=operation,
                    error=str(e),
                    code=e.code,
                    param=getattr(e, "param", None),
                )
                raise StripeClientError(
                    f"Invalid request: {e.user_message or str(e)}",
                    code=e.code,
                    stripe_error=e,
                    param=getattr(e, "param", None),
                ) from e

            except (RateLimitError, APIConnectionError, APIError) as e:
                last_error = e
                if not self._should_retry(e, attempt):
                    logger.error(
                        "Stripe operation failed",
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                        attempt=attempt,
                    )
                    if isinstance(e, RateLimitError):
                        error_cls = StripeRateLimitError
                    elif isinstance(e, APIConnectionError):
                        error_cls = StripeConnectionError
                    else:
                        error_cls = StripeClientError
                    raise error_cls(
                        f"Payment provider unavailable: {e.user_message or str(e)}",
                        code=e.code,
                        stripe_error=e,
                    ) from e

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Stripe operation failed, retrying",
                    operation=operation,
                    error_type=type(e).__name__,
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)

            except StripeError as e:
                logger.error(
                    "Unexpected Stripe error",
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise StripeClientError(
                    f"Stripe error: {e.user_message or str(e)}",
                    code=getattr(e, "code", None),
                    stripe_error=e,
                ) from e

        raise StripeClientError(
            f"Operation failed after {self.max_retries} retries",
            stripe_error=last_error,
        )

    async def create_checkout_session(
        self,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        customer_email: Optional[str] = None,
        discounts: Optional[list[dict[str, str]]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.checkout.Session:
        """
        Create a hosted Checkout session in payment mode.

        Args:
            line_items: Stripe line items with ``price_data`` in minor units
            success_url: Redirect after successful payment
            cancel_url: Redirect when the customer abandons checkout
            metadata: Encoded order intent
            customer_email: Prefilled customer email
            discounts: Coupons to apply to the session
            idempotency_key: Idempotency key for safe retries

        Returns:
            Stripe Checkout Session object

        Raises:
            StripeClientError: If session creation fails
        """
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
        }
        if customer_email:
            params["customer_email"] = customer_email
        if discounts:
            params["discounts"] = discounts
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        session = await self._execute_with_retry(
            "create_checkout_session",
            stripe.checkout.Session.create,
            **params,
        )

        logger.info(
            "Checkout session created",
            session_id=session["id"],
            line_item_count=len(line_items),
        )
        return session

    async def retrieve_checkout_session(self, session_id: str) -> stripe.checkout.Session:
        """
        Retrieve a Checkout session by id.

        Raises:
            StripeClientError: If retrieval fails
        """
        return await self._execute_with_retry(
            "retrieve_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
        )

    async def create_coupon(
        self,
        amount_off: int,
        currency: str,
        name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Coupon:
        """
        Create a single use Stripe coupon for an order discount.

        Args:
            amount_off: Discount in minor units
            currency: ISO currency code
            name: Name shown on the hosted checkout page
            idempotency_key: Idempotency key for safe retries
        """
        params: dict[str, Any] = {
            "amount_off": amount_off,
            "currency": currency,
            "duration": "once",
        }
        if name:
            params["name"] = name[:40]
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        coupon = await self._execute_with_retry(
            "create_coupon",
            stripe.Coupon.create,
            **params,
        )
        logger.info("Stripe coupon created", coupon_id=coupon["id"], amount_off=amount_off)
        return coupon

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        reason: str = "requested_by_customer",
        metadata: Optional[Mapping[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Refund part or all of a captured payment.

        Args:
            payment_intent_id: Payment intent of the original charge
            amount: Amount to refund in minor units
            reason: Stripe refund reason
            metadata: Order references stored on the refund
            idempotency_key: Idempotency key for safe retries, reused on
                every attempt so a lost response cannot refund twice

        Raises:
            StripeClientError: If the refund request fails
        """
        params: dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "amount": amount,
            "reason": reason,
            "metadata": dict(metadata or {}),
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = await self._execute_with_retry(
            "create_refund",
            stripe.Refund.create,
            **params,
        )
        logger.info(
            "Stripe refund created",
            refund_id=refund["id"],
            payment_intent_id=payment_intent_id,
            amount=amount,
            status=refund["status"],
        )
        return refund

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> stripe.Event:
        """
        Construct and verify a webhook event from Stripe.

        Args:
            payload: Raw webhook payload bytes
            signature: Stripe-Signature header value

        Returns:
            Verified Stripe Event object

        Raises:
            StripeNotConfiguredError: If no webhook secret is configured
            StripeSignatureError: If the payload or signature is invalid
        """
        if not self.webhook_secret:
            raise StripeNotConfiguredError(
                "Webhook signing secret is not configured",
                code="WEBHOOK_NOT_CONFIGURED",
            )
        if not signature:
            raise StripeSignatureError(
                "Missing webhook signature",
                code="MISSING_SIGNATURE",
            )

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.warning("Invalid webhook payload", error=str(e))
            raise StripeSignatureError(
                "Invalid webhook payload",
                code="INVALID_PAYLOAD",
            ) from e
        except SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", error=str(e))
            raise StripeSignatureError(
                "Webhook signature verification failed",
                code="INVALID_SIGNATURE",
                stripe_error=e,
            ) from e

        logger.info(
            "Webhook event verified",
            event_id=event["id"],
            event_type=event["type"],
        )
        return event
