"""
Pytest configuration and shared fixtures for backend tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

TEST_WEBHOOK_SECRET = "whsec_testsecret"

# Settings are cached on first import, so the environment must be ready first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DATABASE_DIALECT"] = "sqlite"
os.environ["ENVIRONMENT"] = "test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_0123456789abcdef"
os.environ["STRIPE_WEBHOOK_SECRET"] = TEST_WEBHOOK_SECRET
os.environ["STRIPE_PRICE_MONTHLY_IDS"] = "price_monthly"
os.environ["STRIPE_PRICE_ANNUAL_IDS"] = "price_annual"
os.environ["ENTITLEMENT_SYNC_BACKOFF_SECONDS"] = "0"
os.environ["RESEND_API_KEY"] = ""

import pytest
from typing import AsyncGenerator
from unittest.mock import AsyncMock
from uuid import uuid4

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import after path is set
from adapters.email.resend_adapter import ResendEmailService
from adapters.payments.stripe_adapter import StripeAdapter
from api.dependencies import get_billing_provider, get_database_dialect, token_service
from core.domain.subscription import EntitlementStatus, SubscriptionSnapshot
from infrastructure.database.connection import get_db
from infrastructure.database.models import Base, SubscriptionRecord, User
from infrastructure.database.models.user import UserRole


# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 2026-01-01T00:00:00Z
PERIOD_END = 1767225600


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user on the free tier."""
    user = User(
        id=str(uuid4()),
        email="test@example.com",
        name="Test User",
        status="active",
        subscription_status=EntitlementStatus.FREE,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def subscribed_user(db_session: AsyncSession) -> User:
    """Create a premium user with an active subscription record (sub_123 / cus_123)."""
    user = User(
        id=str(uuid4()),
        email="premium@example.com",
        name="Premium User",
        status="active",
        subscription_status=EntitlementStatus.PREMIUM,
    )
    db_session.add(user)
    await db_session.flush()
    db_session.add(
        SubscriptionRecord(
            id=str(uuid4()),
            user_id=user.id,
            external_customer_id="cus_123",
            external_subscription_id="sub_123",
            price_id="price_monthly",
            plan="monthly",
            status="active",
            cancel_at_period_end=False,
        )
    )
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def admin_user(db_session: AsyncSession) -> User:
    """Create an admin user."""
    user = User(
        id=str(uuid4()),
        email="admin@example.com",
        name="Admin User",
        role=UserRole.ADMIN.value,
        status="active",
        subscription_status=EntitlementStatus.FREE,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    """Generate authentication headers for test user."""
    access_token = token_service.create_access_token(user_id=test_user.id)
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
def admin_headers(admin_user: User) -> dict:
    """Generate authentication headers for the admin user."""
    access_token = token_service.create_access_token(user_id=admin_user.id)
    return {"Authorization": f"Bearer {access_token}"}


# ============================================================================
# Billing provider fixtures
# ============================================================================


@pytest.fixture
def stripe_subscription():
    """
    Build a Stripe ``subscription`` object.

    Defaults describe an active monthly subscription sub_123 owned by
    customer cus_123, with the billing period on the first item as newer API
    versions send it.
    """

    def build(
        subscription_id: str = "sub_123",
        customer_id: str = "cus_123",
        status: str = "active",
        price_id: str = "price_monthly",
        interval: str = "month",
        period_end: int | None = PERIOD_END,
        cancel_at_period_end: bool = False,
        metadata: dict | None = None,
    ) -> dict:
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "metadata": metadata or {},
            "items": {
                "object": "list",
                "data": [
                    {
                        "id": f"si_{subscription_id}",
                        "current_period_end": period_end,
                        "price": {
                            "id": price_id,
                            "unit_amount": 999,
                            "currency": "usd",
                            "recurring": {"interval": interval, "interval_count": 1},
                        },
                    }
                ],
            },
        }

    return build


@pytest.fixture
def snapshot_of(stripe_subscription):
    """Build a SubscriptionSnapshot as the provider adapter would return it."""

    def build(**kwargs) -> SubscriptionSnapshot:
        return SubscriptionSnapshot.from_provider_object(stripe_subscription(**kwargs))

    return build


@pytest.fixture
def webhook_event():
    """Wrap a provider object in an event envelope."""

    def build(event_type: str, obj: dict, event_id: str | None = None) -> dict:
        return {
            "id": event_id or f"evt_{uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return build


@pytest.fixture
def sign_webhook():
    """
    Serialize an envelope and produce a matching ``Stripe-Signature`` header.

    The signature is HMAC-SHA256 over ``"<timestamp>.<raw body>"``.
    """

    def sign(
        envelope: dict,
        timestamp: int | None = None,
        secret: str = TEST_WEBHOOK_SECRET,
    ) -> tuple[bytes, str]:
        body = json.dumps(envelope, separators=(",", ":")).encode()
        signed_at = int(time.time()) if timestamp is None else timestamp
        signature = hmac.new(
            secret.encode(),
            f"{signed_at}.".encode() + body,
            hashlib.sha256,
        ).hexdigest()
        return body, f"t={signed_at},v1={signature}"

    return sign


@pytest.fixture
def mock_provider() -> StripeAdapter:
    """
    A Stripe adapter whose API reads are mocked.

    Webhook signature verification stays real and uses TEST_WEBHOOK_SECRET.
    """
    provider = StripeAdapter(
        api_key="sk_test_0123456789abcdef",
        webhook_secret=TEST_WEBHOOK_SECRET,
    )
    provider.get_subscription = AsyncMock()
    provider.list_subscriptions = AsyncMock(return_value=[])
    provider.find_customer_by_email = AsyncMock(return_value=None)
    provider.get_subscription_details = AsyncMock()
    return provider


@pytest.fixture
def mock_email() -> AsyncMock:
    """Email service that records sends instead of calling Resend."""
    email = AsyncMock(spec=ResendEmailService)
    email.send_payment_failed_email.return_value = True
    return email


@pytest.fixture
async def async_client(
    db_session: AsyncSession, mock_provider: StripeAdapter
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    # Import app here to avoid circular imports
    from main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_provider] = lambda: mock_provider
    app.dependency_overrides[get_database_dialect] = lambda: "sqlite"

    # Reset rate limiter state between tests to prevent cross-test 429s
    app.state.limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
