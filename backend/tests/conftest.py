"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (via aiosqlite) with all
tables created. Stripe is never called: tests patch the functions in
``subsync.billing.stripe_client`` where they are imported.
"""

import os

# Settings are read at import time; configure before importing subsync.
os.environ.update(
    {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "ENVIRONMENT": "test",
        "JWT_SECRET_KEY": "test-jwt-secret",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
        "STRIPE_PRICE_ID_ONE_TIME": "price_one_time",
        "STRIPE_PRICE_ID_MONTHLY": "price_monthly",
        "STRIPE_PRICE_ID_THREE_MONTH": "price_three_month",
        "STRIPE_PRICE_ID_SIX_MONTH": "price_six_month",
        "APP_URL": "https://app.example.com",
        "ALLOWED_REDIRECT_HOSTS": '["localhost", "app.example.com"]',
        "BILLING_NOTIFICATION_URL": "",
    }
)

import time  # noqa: E402
import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from subsync.auth.dependencies import CallerIdentity  # noqa: E402
from subsync.auth.jwt import create_access_token  # noqa: E402
from subsync.billing.notifications import drain_background_tasks  # noqa: E402
from subsync.billing.rate_limit import RateLimiter  # noqa: E402
from subsync.database import Base, get_db, get_session_factory  # noqa: E402
from subsync.main import app  # noqa: E402
from subsync.models import Invoice, ProcessedWebhookEvent, Subscription  # noqa: E402, F401

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ---------------------------------------------------------------------------
# Per-test database: one shared in-memory connection, tables created fresh
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory database with all tables for one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await drain_background_tasks()
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session on the test database."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB and a fresh rate limiter."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.rate_limiter = RateLimiter()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


@pytest.fixture
def identity() -> CallerIdentity:
    unique = uuid.uuid4().hex[:8]
    return CallerIdentity(
        user_id=f"user-{unique}",
        email=f"billing-{unique}@test.com",
        display_name="Billing Test User",
    )


def auth_headers_for(identity: CallerIdentity) -> dict[str, str]:
    token = create_access_token({"sub": identity.user_id, "email": identity.email, "name": identity.display_name})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(identity: CallerIdentity) -> dict[str, str]:
    """Authorization headers for the ``identity`` fixture."""
    return auth_headers_for(identity)


# ---------------------------------------------------------------------------
# Stripe payload builders
# ---------------------------------------------------------------------------


def _stripe_subscription(
    price_id: str = "price_monthly",
    status: str = "active",
    sub_id: str = "sub_test_123",
    customer: str = "cus_test_123",
    item_id: str = "si_test_123",
    period_start: int = 1700000000,
    period_end: int = 1702592000,
    cancel_at_period_end: bool = False,
    cancel_at: int | None = None,
    user_id: str | None = None,
    interval: str = "month",
    interval_count: int = 1,
) -> dict:
    """A Stripe subscription object as sent in events and API responses."""
    # Stripe API 2025-08-27 (basil): current_period_start/end live on the item
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "canceled_at": None,
        "trial_end": None,
        "metadata": {"userId": user_id} if user_id else {},
        "items": {
            "object": "list",
            "data": [
                {
                    "id": item_id,
                    "price": {
                        "id": price_id,
                        "nickname": None,
                        "recurring": {"interval": interval, "interval_count": interval_count},
                    },
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ],
        },
    }


def _stripe_event(event_type: str, data_object: dict, created: int | None = None, event_id: str | None = None) -> dict:
    """A Stripe event envelope."""
    return {
        "id": event_id or f"evt_test_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "livemode": False,
        "data": {"object": data_object},
    }


@pytest.fixture
def make_subscription():
    """Factory for Stripe subscription payloads."""
    return _stripe_subscription


@pytest.fixture
def make_event():
    """Factory for Stripe event envelopes."""
    return _stripe_event


# ---------------------------------------------------------------------------
# Convenience: seed a local subscription row
# ---------------------------------------------------------------------------


@pytest.fixture
def seed_subscription(db_session: AsyncSession):
    """Insert a committed Subscription row; returns a coroutine factory."""

    async def _seed(user_id: str, **fields) -> Subscription:
        subscription = Subscription(user_id=user_id, **fields)
        db_session.add(subscription)
        await db_session.commit()
        return subscription

    return _seed
