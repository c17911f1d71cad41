"""
Order email templates rendered with Jinja2.

Each notification has a subject, a plain text body and an HTML body. The
templates ship with the package through a dictionary loader.
"""

from decimal import Decimal
from typing import Any, Optional

from jinja2 import (
    DictLoader,
    Environment,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from storefront.core.logging import get_logger

logger = get_logger(__name__)

ORDER_TEMPLATES = {
    "order_confirmation_subject.txt": "Your order {{ order.order_number }} is confirmed",
    "order_confirmation.txt": (
        "Thank you for your order!\n\n"
        "Order: {{ order.order_number }}\n"
        "{% for item in order.items %}"
        "- {{ item.title }} x{{ item.quantity }}: {{ item.subtotal | currency }}\n"
        "{% endfor %}"
        "\nSubtotal: {{ order.subtotal | currency }}\n"
        "Discount: {{ order.discount | currency }}\n"
        "Shipping: {{ order.shipping_charges | currency }}\n"
        "Total: {{ order.total | currency }}\n"
        "{% if order.payment_method.value == 'cod' %}"
        "\nPayment is due on delivery.\n"
        "{% endif %}"
    ),
    "order_confirmation.html": (
        "<h1>Thank you for your order!</h1>"
        "<p>Order <strong>{{ order.order_number }}</strong></p>"
        "<ul>{% for item in order.items %}"
        "<li>{{ item.title }} &times; {{ item.quantity }}: {{ item.subtotal | currency }}</li>"
        "{% endfor %}</ul>"
        "<p>Subtotal: {{ order.subtotal | currency }}<br>"
        "Discount: {{ order.discount | currency }}<br>"
        "Shipping: {{ order.shipping_charges | currency }}<br>"
        "<strong>Total: {{ order.total | currency }}</strong></p>"
        "{% if order.payment_method.value == 'cod' %}<p>Payment is due on delivery.</p>{% endif %}"
    ),
    "order_status_subject.txt": "Order {{ order.order_number }} is {{ order.status.value }}",
    "order_status.txt": (
        "Your order {{ order.order_number }} is now {{ order.status.value }}.\n"
        "{% if order.tracking_number %}Tracking number: {{ order.tracking_number }}\n{% endif %}"
        "{% if notes %}{{ notes }}\n{% endif %}"
    ),
    "order_status.html": (
        "<p>Your order <strong>{{ order.order_number }}</strong> is now "
        "<strong>{{ order.status.value }}</strong>.</p>"
        "{% if order.tracking_number %}<p>Tracking number: {{ order.tracking_number }}</p>{% endif %}"
        "{% if notes %}<p>{{ notes }}</p>{% endif %}"
    ),
    "order_cancelled_subject.txt": "Order {{ order.order_number }} has been cancelled",
    "order_cancelled.txt": (
        "Your order {{ order.order_number }} has been cancelled.\n"
        "{% if order.cancellation_reason %}Reason: {{ order.cancellation_reason }}\n{% endif %}"
    ),
    "order_cancelled.html": (
        "<p>Your order <strong>{{ order.order_number }}</strong> has been cancelled.</p>"
        "{% if order.cancellation_reason %}<p>Reason: {{ order.cancellation_reason }}</p>{% endif %}"
    ),
}


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


def format_currency(value: Any) -> str:
    return f"${Decimal(value or 0):,.2f}"


class TemplateEngine:
    """Renders order email templates."""

    def __init__(self, templates: Optional[dict[str, str]] = None):
        self.env = Environment(
            loader=DictLoader(templates or ORDER_TEMPLATES),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = format_currency

    def render_email(self, template_name: str, **context: Any) -> dict[str, str]:
        """
        Render subject, text and HTML parts of an email.

        Args:
            template_name: Template base name, e.g. ``order_confirmation``
            **context: Template variables

        Returns:
            Dictionary with ``subject``, ``text_body`` and ``html_body``

        Raises:
            TemplateEngineError: If a template is missing or fails to render
        """
        try:
            return {
                "subject": self.env.get_template(f"{template_name}_subject.txt")
                .render(**context)
                .strip(),
                "text_body": self.env.get_template(f"{template_name}.txt").render(**context),
                "html_body": self.env.get_template(f"{template_name}.html").render(**context),
            }
        except TemplateNotFound as e:
            raise TemplateEngineError(
                f"Template not found: {e.name}", template_name=template_name
            ) from e
        except TemplateError as e:
            logger.error("Template rendering failed", template=template_name, error=str(e))
            raise TemplateEngineError(
                f"Failed to render template: {e}", template_name=template_name
            ) from e
