"""
Integration tests for the customer and administrator order endpoints.

The order service runs on the in-memory repositories; authentication is
replaced by overriding ``get_current_user`` so the administrator guard
itself is still exercised.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import status

from storefront.api.deps import get_current_user, get_order_service
from storefront.database.models.order import OrderStatus, PaymentMethod
from storefront.services.orders.service import OrderService
from tests.fakes import make_repositories, place_order

ORDERS_URL = "/api/v1/orders"
ADMIN_URL = "/api/v1/admin/orders"


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def client(test_client, db, notifier, settings, mock_stripe_client):
    """Test client with the order service on the fake database."""

    def order_service() -> OrderService:
        orders, inventory = make_repositories(db)
        return OrderService(
            orders=orders,
            inventory=inventory,
            notifier=notifier,
            settings=settings,
            stripe_client=mock_stripe_client,
        )

    test_client.app.dependency_overrides[get_order_service] = order_service
    return test_client


@pytest.fixture
def as_customer(client, customer):
    client.app.dependency_overrides[get_current_user] = lambda: customer
    return client


@pytest.fixture
def as_admin(client, admin):
    client.app.dependency_overrides[get_current_user] = lambda: admin
    return client


@pytest.fixture
def card_order(db, serum, customer):
    return place_order(db, [(serum, 2)], user=customer)


# ============================================================================
# Customer Endpoints
# ============================================================================


class TestCustomerOrderEndpoints:
    """/orders"""

    def test_list_my_orders(self, as_customer, card_order):
        response = as_customer.get(ORDERS_URL, params={"limit": 5})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 1
        assert data["pages"] == 1
        assert data["items"][0]["order_number"] == card_order.order_number

    def test_get_someone_elses_order(self, as_customer, db, serum):
        other = place_order(db, [(serum, 1)], user=None)

        response = as_customer.get(f"{ORDERS_URL}/{other.id}")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["code"] == "ORDER_NOT_FOUND"

    def test_cancel_my_order(self, as_customer, card_order, serum):
        response = as_customer.post(
            f"{ORDERS_URL}/{card_order.id}/cancel", json={"reason": "Ordered twice"}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancellation_reason"] == "Ordered twice"
        assert serum.stock == 12

    def test_cancel_shipped_order_rejected(self, as_customer, card_order):
        card_order.status = OrderStatus.SHIPPED

        response = as_customer.post(f"{ORDERS_URL}/{card_order.id}/cancel")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "CANCELLATION_NOT_ALLOWED"

    def test_cod_return_with_bank_details(self, as_customer, db, serum, customer):
        order = place_order(
            db,
            [(serum, 1)],
            user=customer,
            payment_method=PaymentMethod.COD,
            status=OrderStatus.DELIVERED,
            delivered_at=datetime.now(timezone.utc) - timedelta(days=1),
        )

        response = as_customer.post(
            f"{ORDERS_URL}/{order.id}/return",
            json={
                "reason": "Allergic reaction",
                "bank_details": {
                    "account_holder_name": "Jane Doe",
                    "bank_name": "First Bank",
                    "account_number": "000123456789",
                    "routing_number": "021000021",
                    "account_type": "Checking",
                },
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["return_request"]["status"] == "requested"
        assert order.return_bank_details["account_type"] == "checking"

    def test_invalid_routing_number(self, as_customer, card_order):
        response = as_customer.post(
            f"{ORDERS_URL}/{card_order.id}/return",
            json={
                "reason": "Allergic reaction",
                "bank_details": {
                    "account_holder_name": "Jane Doe",
                    "bank_name": "First Bank",
                    "account_number": "000123456789",
                    "routing_number": "12345",
                    "account_type": "checking",
                },
            },
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


# ============================================================================
# Administrator Endpoints
# ============================================================================


class TestAdminOrderEndpoints:
    """/admin/orders"""

    def test_customers_forbidden(self, as_customer):
        response = as_customer.get(ADMIN_URL)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_list_and_filter(self, as_admin, db, serum, card_order):
        place_order(db, [(serum, 1)], status=OrderStatus.CANCELLED)

        response = as_admin.get(ADMIN_URL, params={"status": "cancelled"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["status"] == "cancelled"

    def test_status_change(self, as_admin, card_order):
        response = as_admin.patch(
            f"{ADMIN_URL}/{card_order.id}/status",
            json={"status": "PROCESSING", "notes": "Packing"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "processing"
        assert data["status_history"][-1]["to_status"] == "processing"

    def test_invalid_status_change(self, as_admin, card_order):
        response = as_admin.patch(
            f"{ADMIN_URL}/{card_order.id}/status", json={"status": "delivered"}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["code"] == "INVALID_STATUS_TRANSITION"
        assert detail["context"]["allowed_transitions"] == ["cancelled", "processing", "refunded"]

    def test_unknown_order(self, as_admin):
        response = as_admin.get(f"{ADMIN_URL}/{uuid.uuid4()}")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_mark_failed_requires_pending(self, as_admin, card_order):
        response = as_admin.post(f"{ADMIN_URL}/{card_order.id}/fail", json={"reason": "Fraud"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_stats(self, as_admin, card_order):
        response = as_admin.get(f"{ADMIN_URL}/stats", params={"period": "7d"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total_orders"] == 1
        assert Decimal(data["revenue"]) == Decimal("65")

    def test_stats_rejects_unknown_period(self, as_admin):
        response = as_admin.get(f"{ADMIN_URL}/stats", params={"period": "1y"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
