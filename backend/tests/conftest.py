"""
Pytest configuration and shared test fixtures.

The environment is pinned to ``test`` before any application module is
imported so that settings, the rate limiter and the notifier pick it up.
Services are exercised against the in-memory repositories in
``tests.fakes``; API tests override the FastAPI service dependencies.
"""

import os

os.environ["APP_ENVIRONMENT"] = "test"
os.environ["APP_RATE_LIMIT_ENABLED"] = "false"
os.environ["APP_NOTIFICATIONS_ENABLED"] = "false"
os.environ["APP_STRIPE_SECRET_KEY"] = "sk_test_fake_key"
os.environ["APP_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Generator
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from fastapi.testclient import TestClient

from storefront.core.config import Settings, get_settings
from storefront.database.models.user import User, UserRole
from storefront.services.notifications.service import OrderNotifier
from storefront.services.payments.stripe_client import StripeClient
from tests.fakes import FakeDatabase, make_coupon, make_product


@pytest.fixture
def settings() -> Settings:
    """Settings used by services under test."""
    return get_settings()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db() -> FakeDatabase:
    """Empty in-memory store shared by the fake repositories."""
    return FakeDatabase()


@pytest.fixture
def serum(db: FakeDatabase):
    """Discounted, COD enabled product: list 40.00, 25% off, flat 5.00 shipping."""
    return db.add_product(
        make_product(
            title="Vitamin C Serum",
            price=Decimal("40.00"),
            discount_type="percentage",
            discount_value=Decimal("25"),
            shipping_charges=Decimal("5.00"),
            free_shipping_threshold=Decimal("100.00"),
            cod_enabled=True,
            stock=10,
            taxonomy_ids=["serums"],
        )
    )


@pytest.fixture
def cleanser(db: FakeDatabase):
    """Undiscounted card-only product without shipping charges."""
    return db.add_product(
        make_product(
            title="Gentle Cleanser",
            price=Decimal("15.00"),
            cod_enabled=False,
            stock=3,
            taxonomy_ids=["cleansers"],
        )
    )


@pytest.fixture
def save10(db: FakeDatabase):
    """Unrestricted 10 percent coupon."""
    return db.add_coupon(make_coupon(code="SAVE10", type="percent", value=Decimal("10")))


@pytest.fixture
def customer(db: FakeDatabase) -> User:
    return db.add_user(
        User(
            id=uuid.uuid4(),
            email="jane@example.com",
            name="Jane",
            role=UserRole.CUSTOMER,
            is_active=True,
        )
    )


@pytest.fixture
def admin(db: FakeDatabase) -> User:
    return db.add_user(
        User(
            id=uuid.uuid4(),
            email="admin@example.com",
            name="Admin",
            role=UserRole.ADMIN,
            is_active=True,
        )
    )


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """Stripe client double returning canned sessions, coupons and refunds."""
    client = AsyncMock(spec=StripeClient)
    client.is_configured = True
    client.create_coupon.return_value = {"id": "coupon_test_1"}
    client.create_checkout_session.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }
    client.create_refund.return_value = {"id": "re_test_1", "status": "succeeded"}
    client.construct_webhook_event = Mock()
    return client


@pytest.fixture
def notifier() -> MagicMock:
    """Notifier double recording scheduled emails."""
    return MagicMock(spec=OrderNotifier)


@pytest.fixture
def test_client() -> Generator[TestClient, None, None]:
    """
    Synchronous test client for the FastAPI application.

    Dependency overrides installed by a test are removed afterwards.
    """
    from storefront.main import app

    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
