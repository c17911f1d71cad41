"""
Order email notifications.

This module provides the OrderNotifier used after an order is created or
changes state. Emails are rendered immediately, while the order is still
bound to the request, and delivered in a background task so that SES
latency or failures never affect the order operation that triggered them.
"""

import asyncio
from typing import Any, Optional

from storefront.core.config import Settings
from storefront.core.logging import get_logger
from storefront.database.models.order import Order
from storefront.services.notifications.aws_clients import SESClient, SESClientError
from storefront.services.notifications.templates import (
    TemplateEngine,
    TemplateEngineError,
)

logger = get_logger(__name__)


class OrderNotifier:
    """
    Sends order lifecycle emails through SES.

    Delivery is best effort: failures are logged and never raised to the
    caller. Pending deliveries are tracked so shutdown can wait for them.
    """

    def __init__(
        self,
        ses_client: Optional[SESClient] = None,
        template_engine: Optional[TemplateEngine] = None,
        enabled: bool = True,
    ) -> None:
        """
        Initialize order notifier.

        Args:
            ses_client: SES client, notifications are skipped without one
            template_engine: Template engine (defaults to new instance)
            enabled: Master switch for order emails
        """
        self.ses_client = ses_client
        self.template_engine = template_engine or TemplateEngine()
        self.enabled = enabled and ses_client is not None
        self._pending: set[asyncio.Task] = set()

        logger.info("OrderNotifier initialized", enabled=self.enabled)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrderNotifier":
        if not settings.notifications_enabled or settings.environment == "test":
            return cls(enabled=False)
        return cls(
            ses_client=SESClient(
                region_name=settings.aws_region,
                sender=settings.ses_sender_email,
            )
        )

    def schedule_order_confirmation(self, order: Order) -> None:
        self._schedule(order, "order_confirmation")

    def schedule_status_update(self, order: Order, notes: Optional[str] = None) -> None:
        self._schedule(order, "order_status", notes=notes)

    def schedule_cancellation(self, order: Order) -> None:
        self._schedule(order, "order_cancelled")

    def _schedule(self, order: Order, template_name: str, **context: Any) -> None:
        if not self.enabled:
            logger.debug(
                "Notifications disabled, skipping email",
                template=template_name,
                order_id=str(order.id),
            )
            return
        if not order.customer_email:
            logger.info(
                "Order has no customer email, skipping notification",
                template=template_name,
                order_id=str(order.id),
            )
            return

        try:
            email = self.template_engine.render_email(template_name, order=order, **context)
        except TemplateEngineError as e:
            logger.error(
                "Failed to render order email",
                template=template_name,
                order_id=str(order.id),
                error=str(e),
            )
            return

        task = asyncio.create_task(
            self._deliver(order.customer_email, email, template_name, str(order.id))
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self,
        recipient: str,
        email: dict[str, str],
        template_name: str,
        order_id: str,
    ) -> None:
        try:
            message_id = await asyncio.to_thread(
                self.ses_client.send_email,
                [recipient],
                email["subject"],
                email["text_body"],
                email["html_body"],
            )
        except SESClientError as e:
            logger.error(
                "Order email delivery failed",
                template=template_name,
                order_id=order_id,
                error=str(e),
                details=e.context,
            )
            return
        except Exception as e:
            # Errors stop here; nothing awaits the delivery task
            logger.error(
                "Unexpected error in order email delivery",
                template=template_name,
                order_id=order_id,
                error=str(e),
                exc_info=True,
            )
            return

        logger.info(
            "Order email sent",
            template=template_name,
            order_id=order_id,
            message_id=message_id,
        )

    async def drain(self) -> None:
        """Wait for pending deliveries to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
