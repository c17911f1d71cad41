"""
Tests for order email notifications and their templates.

The notifier renders synchronously and delivers in background tasks;
tests call ``drain`` to wait for delivery before asserting on the mocked
SES client.
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from storefront.database.models.order import OrderStatus, PaymentMethod
from storefront.services.notifications.aws_clients import SESClient, SESClientError
from storefront.services.notifications.service import OrderNotifier
from storefront.services.notifications.templates import (
    TemplateEngine,
    TemplateEngineError,
    format_currency,
)
from tests.fakes import make_product, place_order


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def ses_client() -> MagicMock:
    client = MagicMock(spec=SESClient)
    client.send_email.return_value = "msg-123"
    return client


@pytest.fixture
def order_notifier(ses_client: MagicMock) -> OrderNotifier:
    return OrderNotifier(ses_client=ses_client)


@pytest.fixture
def order(db, serum, customer):
    """Card order for two serums, total 65.00."""
    return place_order(db, [(serum, 2)], user=customer)


# ============================================================================
# Notifier
# ============================================================================


class TestOrderNotifier:
    """Scheduling and delivery of order emails."""

    async def test_confirmation_sent(self, order_notifier, ses_client, order):
        order_notifier.schedule_order_confirmation(order)
        await order_notifier.drain()

        ses_client.send_email.assert_called_once()
        recipients, subject, text_body, html_body = ses_client.send_email.call_args.args
        assert recipients == ["jane@example.com"]
        assert subject == f"Your order {order.order_number} is confirmed"
        assert "Vitamin C Serum x2: $60.00" in text_body
        assert "Total: $65.00" in text_body
        assert "Payment is due on delivery" not in text_body
        assert "<strong>Total: $65.00</strong>" in html_body

    async def test_status_update_includes_tracking_and_notes(
        self, order_notifier, ses_client, order
    ):
        order.status = OrderStatus.SHIPPED
        order.tracking_number = "1Z999"

        order_notifier.schedule_status_update(order, notes="Left the warehouse")
        await order_notifier.drain()

        _, subject, text_body, _ = ses_client.send_email.call_args.args
        assert subject.endswith("is shipped")
        assert "Tracking number: 1Z999" in text_body
        assert "Left the warehouse" in text_body

    async def test_cancellation_includes_reason(self, order_notifier, ses_client, order):
        order.status = OrderStatus.CANCELLED
        order.cancellation_reason = "Ordered twice"

        order_notifier.schedule_cancellation(order)
        await order_notifier.drain()

        _, subject, text_body, _ = ses_client.send_email.call_args.args
        assert "has been cancelled" in subject
        assert "Reason: Ordered twice" in text_body

    async def test_skipped_without_customer_email(self, order_notifier, ses_client, order):
        order.customer_email = None

        order_notifier.schedule_order_confirmation(order)
        await order_notifier.drain()

        ses_client.send_email.assert_not_called()

    async def test_delivery_failure_is_not_raised(self, order_notifier, ses_client, order):
        ses_client.send_email.side_effect = SESClientError(
            "SES rejected message: MessageRejected", error_code="MessageRejected"
        )

        order_notifier.schedule_order_confirmation(order)
        await order_notifier.drain()

        ses_client.send_email.assert_called_once()

    async def test_unexpected_delivery_error_is_logged(self, order_notifier, ses_client, order):
        ses_client.send_email.side_effect = RuntimeError("connection pool closed")

        with patch("storefront.services.notifications.service.logger") as mock_logger:
            order_notifier.schedule_order_confirmation(order)
            (task,) = order_notifier._pending
            await order_notifier.drain()

        assert task.exception() is None
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args.kwargs["error"] == "connection pool closed"
        assert mock_logger.error.call_args.kwargs["exc_info"] is True

    async def test_render_failure_skips_delivery(self, ses_client, order):
        notifier = OrderNotifier(
            ses_client=ses_client, template_engine=TemplateEngine({"unused.txt": ""})
        )

        notifier.schedule_order_confirmation(order)
        await notifier.drain()

        ses_client.send_email.assert_not_called()

    def test_disabled_without_ses_client(self, order):
        notifier = OrderNotifier()

        notifier.schedule_order_confirmation(order)

        assert notifier.enabled is False

    def test_disabled_in_test_environment(self, settings):
        assert OrderNotifier.from_settings(settings).enabled is False


# ============================================================================
# Templates
# ============================================================================


class TestTemplates:
    """Email template rendering."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (Decimal("65"), "$65.00"),
            (Decimal("1234.5"), "$1,234.50"),
            (None, "$0.00"),
        ],
    )
    def test_currency_filter(self, value, expected):
        assert format_currency(value) == expected

    def test_cod_confirmation_mentions_payment_on_delivery(self, db, serum, customer):
        order = place_order(db, [(serum, 1)], user=customer, payment_method=PaymentMethod.COD)

        email = TemplateEngine().render_email("order_confirmation", order=order)

        assert "Payment is due on delivery." in email["text_body"]

    def test_html_is_escaped(self, db, customer):
        product = make_product(title="<b>Retinol</b> Night Cream")
        db.add_product(product)
        order = place_order(db, [(product, 1)], user=customer)

        email = TemplateEngine().render_email("order_confirmation", order=order)

        assert "&lt;b&gt;Retinol&lt;/b&gt;" in email["html_body"]
        assert "<b>Retinol</b>" in email["text_body"]

    def test_missing_template(self):
        with pytest.raises(TemplateEngineError) as exc_info:
            TemplateEngine().render_email("order_shipped_twice")

        assert exc_info.value.template_name == "order_shipped_twice"

    def test_missing_variable(self):
        with pytest.raises(TemplateEngineError):
            TemplateEngine().render_email("order_confirmation")
