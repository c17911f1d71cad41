"""
Test suite for the Stripe API client wrapper.

Covers Checkout session, coupon and refund calls, the exponential backoff
retry loop, translation of Stripe SDK errors, and webhook verification.
Stripe SDK functions are patched so no request leaves the process.
"""

from unittest.mock import MagicMock, patch

import pytest
from stripe import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    CardError,
    InvalidRequestError,
    RateLimitError,
    SignatureVerificationError,
)

from storefront.services.payments.stripe_client import (
    StripeAuthenticationError,
    StripeClient,
    StripeClientError,
    StripeConnectionError,
    StripeNotConfiguredError,
    StripePaymentError,
    StripeRateLimitError,
    StripeSignatureError,
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def stripe_client() -> StripeClient:
    """
    Create a StripeClient with test configuration.

    Backoff is zero so retry tests do not sleep.
    """
    return StripeClient(
        api_key="sk_test_fake_key",
        webhook_secret="whsec_test_secret",
        max_retries=2,
        initial_backoff=0.0,
        max_backoff=0.0,
    )


@pytest.fixture
def line_items() -> list[dict]:
    return [
        {
            "price_data": {
                "currency": "usd",
                "product_data": {"name": "Vitamin C Serum"},
                "unit_amount": 4000,
            },
            "quantity": 2,
        }
    ]


# ============================================================================
# Unit Tests - Configuration And Backoff
# ============================================================================


class TestStripeClientConfiguration:
    """Construction, configuration checks and backoff calculation."""

    def test_from_settings(self, settings):
        client = StripeClient.from_settings(settings)

        assert client.api_key == "sk_test_fake_key"
        assert client.webhook_secret == "whsec_test_secret"
        assert client.max_retries == settings.stripe_max_retries
        assert client.is_configured is True

    @pytest.mark.parametrize(
        "attempt,expected",
        [
            (0, 1.0),
            (1, 2.0),
            (2, 4.0),
            (5, 32.0),
            (10, 32.0),  # Capped at max_backoff
        ],
    )
    def test_calculate_backoff(self, attempt: int, expected: float):
        client = StripeClient(api_key="sk_test_fake_key")
        assert client._calculate_backoff(attempt) == pytest.approx(expected)

    async def test_missing_api_key_raises_not_configured(self, line_items):
        client = StripeClient(api_key=None)

        with patch("stripe.checkout.Session.create") as mock_create:
            with pytest.raises(StripeNotConfiguredError) as exc_info:
                await client.create_checkout_session(
                    line_items, "https://shop/success", "https://shop/cart", {}
                )

        assert exc_info.value.code == "STRIPE_NOT_CONFIGURED"
        assert client.is_configured is False
        mock_create.assert_not_called()


# ============================================================================
# Unit Tests - API Calls
# ============================================================================


class TestCheckoutSessions:
    """Checkout session creation and retrieval."""

    @patch("stripe.checkout.Session.create")
    async def test_create_checkout_session(
        self, mock_create: MagicMock, stripe_client: StripeClient, line_items
    ):
        mock_create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.com/x"}

        session = await stripe_client.create_checkout_session(
            line_items,
            success_url="https://shop/success?session_id={CHECKOUT_SESSION_ID}",
            cancel_url="https://shop/cart",
            metadata={"v": "1", "total": "80"},
            customer_email="jane@example.com",
            discounts=[{"coupon": "coupon_1"}],
            idempotency_key="checkout_1_session",
        )

        assert session["id"] == "cs_test_1"
        mock_create.assert_called_once_with(
            api_key="sk_test_fake_key",
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            success_url="https://shop/success?session_id={CHECKOUT_SESSION_ID}",
            cancel_url="https://shop/cart",
            metadata={"v": "1", "total": "80"},
            customer_email="jane@example.com",
            discounts=[{"coupon": "coupon_1"}],
            idempotency_key="checkout_1_session",
        )

    @patch("stripe.checkout.Session.create")
    async def test_optional_parameters_omitted(
        self, mock_create: MagicMock, stripe_client: StripeClient, line_items
    ):
        mock_create.return_value = {"id": "cs_test_1"}

        await stripe_client.create_checkout_session(
            line_items, "https://shop/success", "https://shop/cart", {}
        )

        kwargs = mock_create.call_args.kwargs
        assert "customer_email" not in kwargs
        assert "discounts" not in kwargs
        assert "idempotency_key" not in kwargs

    @patch("stripe.checkout.Session.retrieve")
    async def test_retrieve_checkout_session(
        self, mock_retrieve: MagicMock, stripe_client: StripeClient
    ):
        mock_retrieve.return_value = {"id": "cs_test_1", "payment_status": "paid"}

        session = await stripe_client.retrieve_checkout_session("cs_test_1")

        assert session["payment_status"] == "paid"
        mock_retrieve.assert_called_once_with("cs_test_1", api_key="sk_test_fake_key")


class TestCouponsAndRefunds:
    """One-off coupons and refunds."""

    @patch("stripe.Coupon.create")
    async def test_create_coupon_truncates_name(
        self, mock_create: MagicMock, stripe_client: StripeClient
    ):
        mock_create.return_value = {"id": "coupon_1"}

        coupon = await stripe_client.create_coupon(
            2950, "usd", name="X" * 60, idempotency_key="checkout_1_coupon"
        )

        assert coupon["id"] == "coupon_1"
        mock_create.assert_called_once_with(
            api_key="sk_test_fake_key",
            amount_off=2950,
            currency="usd",
            duration="once",
            name="X" * 40,
            idempotency_key="checkout_1_coupon",
        )

    @patch("stripe.Refund.create")
    async def test_create_refund(self, mock_create: MagicMock, stripe_client: StripeClient):
        mock_create.return_value = {"id": "re_1", "status": "succeeded"}

        refund = await stripe_client.create_refund(
            "pi_123", 1500, metadata={"orderId": "abc"}
        )

        assert refund["status"] == "succeeded"
        mock_create.assert_called_once_with(
            api_key="sk_test_fake_key",
            payment_intent="pi_123",
            amount=1500,
            reason="requested_by_customer",
            metadata={"orderId": "abc"},
        )


# ============================================================================
# Error Handling - Retries And Translation
# ============================================================================


class TestErrorHandling:
    """Retry loop and SDK error translation."""

    @patch("stripe.checkout.Session.retrieve")
    async def test_transient_error_retried(
        self, mock_retrieve: MagicMock, stripe_client: StripeClient
    ):
        mock_retrieve.side_effect = [
            APIConnectionError("Network down"),
            RateLimitError("Too many requests"),
            {"id": "cs_test_1"},
        ]

        session = await stripe_client.retrieve_checkout_session("cs_test_1")

        assert session["id"] == "cs_test_1"
        assert mock_retrieve.call_count == 3

    @patch("stripe.Refund.create")
    async def test_retried_refund_reuses_idempotency_key(
        self, mock_create: MagicMock, stripe_client: StripeClient
    ):
        mock_create.side_effect = [
            APIConnectionError("Connection reset after request was sent"),
            {"id": "re_1", "status": "succeeded"},
        ]

        refund = await stripe_client.create_refund(
            "pi_123", 1500, idempotency_key="refund_order_0"
        )

        assert refund["id"] == "re_1"
        assert mock_create.call_count == 2
        keys = [call.kwargs["idempotency_key"] for call in mock_create.call_args_list]
        assert keys == ["refund_order_0", "refund_order_0"]

    @pytest.mark.parametrize(
        "stripe_error,expected",
        [
            (RateLimitError("Too many requests"), StripeRateLimitError),
            (APIConnectionError("Network down"), StripeConnectionError),
            (APIError("Stripe is having a bad day"), StripeClientError),
        ],
    )
    async def test_retries_exhausted(
        self, stripe_client: StripeClient, stripe_error, expected
    ):
        with patch("stripe.checkout.Session.retrieve", side_effect=stripe_error) as mock_retrieve:
            with pytest.raises(expected) as exc_info:
                await stripe_client.retrieve_checkout_session("cs_test_1")

        assert exc_info.value.stripe_error is stripe_error
        assert mock_retrieve.call_count == stripe_client.max_retries + 1

    @pytest.mark.parametrize(
        "stripe_error,expected",
        [
            (AuthenticationError("Invalid API key"), StripeAuthenticationError),
            (CardError("Card declined", param="card", code="card_declined"), StripePaymentError),
            (InvalidRequestError("No such session", param="id"), StripeClientError),
        ],
    )
    async def test_permanent_errors_not_retried(
        self, stripe_client: StripeClient, stripe_error, expected
    ):
        with patch("stripe.checkout.Session.retrieve", side_effect=stripe_error) as mock_retrieve:
            with pytest.raises(expected):
                await stripe_client.retrieve_checkout_session("cs_missing")

        mock_retrieve.assert_called_once()

    @patch("stripe.checkout.Session.retrieve")
    async def test_invalid_request_keeps_param(
        self, mock_retrieve: MagicMock, stripe_client: StripeClient
    ):
        mock_retrieve.side_effect = InvalidRequestError(
            "No such checkout session", param="session", code="resource_missing"
        )

        with pytest.raises(StripeClientError) as exc_info:
            await stripe_client.retrieve_checkout_session("cs_missing")

        assert exc_info.value.code == "resource_missing"
        assert exc_info.value.context == {"param": "session"}


# ============================================================================
# Unit Tests - Webhook Verification
# ============================================================================


class TestConstructWebhookEvent:
    """Webhook payload and signature verification."""

    @patch("stripe.Webhook.construct_event")
    def test_construct_webhook_event_success(
        self, mock_construct: MagicMock, stripe_client: StripeClient
    ):
        event = {"id": "evt_1", "type": "checkout.session.completed"}
        mock_construct.return_value = event

        result = stripe_client.construct_webhook_event(b"{}", "t=1,v1=abc")

        assert result == event
        mock_construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test_secret")

    @patch("stripe.Webhook.construct_event")
    def test_invalid_payload(self, mock_construct: MagicMock, stripe_client: StripeClient):
        mock_construct.side_effect = ValueError("Invalid payload")

        with pytest.raises(StripeSignatureError) as exc_info:
            stripe_client.construct_webhook_event(b"not json", "t=1,v1=abc")

        assert exc_info.value.code == "INVALID_PAYLOAD"

    @patch("stripe.Webhook.construct_event")
    def test_invalid_signature(self, mock_construct: MagicMock, stripe_client: StripeClient):
        mock_construct.side_effect = SignatureVerificationError(
            "No signatures found matching the expected signature", sig_header="t=1,v1=bad"
        )

        with pytest.raises(StripeSignatureError) as exc_info:
            stripe_client.construct_webhook_event(b"{}", "t=1,v1=bad")

        assert exc_info.value.code == "INVALID_SIGNATURE"

    @patch("stripe.Webhook.construct_event")
    def test_missing_signature(self, mock_construct: MagicMock, stripe_client: StripeClient):
        with pytest.raises(StripeSignatureError) as exc_info:
            stripe_client.construct_webhook_event(b"{}", None)

        assert exc_info.value.code == "MISSING_SIGNATURE"
        mock_construct.assert_not_called()

    def test_missing_webhook_secret(self):
        client = StripeClient(api_key="sk_test_fake_key", webhook_secret=None)

        with pytest.raises(StripeNotConfiguredError) as exc_info:
            client.construct_webhook_event(b"{}", "t=1,v1=abc")

        assert exc_info.value.code == "WEBHOOK_NOT_CONFIGURED"
