"""Shared test configuration and fixtures.

Each test gets a fresh schema on its own engine. By default that is an
in-memory SQLite database (one shared connection via StaticPool); point
``TEST_DATABASE_URL`` at a PostgreSQL test database to run against the real
driver. Fixture data is committed, because the webhook ingestor and the
reconciler open their own sessions.
"""

import hashlib
import hmac
import json
import os
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import timedelta
from typing import Any

# Settings are read at import time, so the environment goes first.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-not-for-production")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_1_MONTH", "price_test_1m")
os.environ.setdefault("STRIPE_PRICE_3_MONTH", "price_test_3m")
os.environ.setdefault("STRIPE_PRICE_6_MONTH", "price_test_6m")
os.environ.setdefault("STRIPE_PRICE_12_MONTH", "price_test_12m")
os.environ.setdefault(
    "STRIPE_PROGRAM_PRICES",
    json.dumps(
        {
            "advanced-strength-training": "price_test_ast",
            "9-week-phased-strength": "price_test_9wk",
            "beginner-full-body": "price_test_bfb",
            "weight-loss-kickstart": "price_test_wlk",
        }
    ),
)
os.environ.setdefault("CATALOG_LIVE_PRICING", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.auth.jwt import create_token_pair  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base, get_db, get_session_factory, utcnow  # noqa: E402
from app.main import app  # noqa: E402
from app.models.subscription import Subscription  # noqa: E402
from app.models.user import User  # noqa: E402

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite://")


def _make_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        return create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(TEST_DATABASE_URL, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Per-test engine with a fresh schema
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging fixtures and asserting on results."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users and subscription state
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory: create and commit a user, optionally with subscription state."""

    async def _make(
        role: str = "client",
        stripe_customer_id: str | None = None,
        subscription: dict[str, Any] | None = None,
        **fields: Any,
    ) -> User:
        unique = uuid.uuid4().hex[:8]
        user = User(
            email=fields.pop("email", f"member-{unique}@test.com"),
            name=fields.pop("name", "Test Member"),
            role=role,
            is_active=fields.pop("is_active", True),
            is_email_verified=fields.pop("is_email_verified", True),
            stripe_customer_id=stripe_customer_id,
            **fields,
        )
        db_session.add(user)
        await db_session.flush()

        if subscription is not None:
            db_session.add(Subscription(user_id=user.id, **subscription))
        await db_session.commit()
        return user

    return _make


def active_subscription(**overrides: Any) -> dict[str, Any]:
    """Subscription fields for an active monthly plan, 20 days left."""
    now = utcnow()
    fields = {
        "plan": "1-month",
        "status": "active",
        "stripe_subscription_id": f"sub_test_{uuid.uuid4().hex[:8]}",
        "current_period_start": now - timedelta(days=10),
        "current_period_end": now + timedelta(days=20),
        "cancel_at_period_end": False,
        "last_updated": now - timedelta(days=10),
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def active_sub() -> Callable[..., dict[str, Any]]:
    return active_subscription


def auth_headers_for(user: User) -> dict[str, str]:
    tokens = create_token_pair(str(user.id), user.token_version)
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def headers_for() -> Callable[[User], dict[str, str]]:
    return auth_headers_for


@pytest_asyncio.fixture
async def test_user(make_user) -> User:
    return await make_user(stripe_customer_id="cus_test_member")


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return auth_headers_for(test_user)


@pytest_asyncio.fixture
async def admin_user(make_user) -> User:
    return await make_user(role="admin", email=f"admin-{uuid.uuid4().hex[:8]}@test.com")


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict[str, str]:
    return auth_headers_for(admin_user)


# ---------------------------------------------------------------------------
# Signed webhook deliveries
# ---------------------------------------------------------------------------


def stripe_event(
    event_type: str,
    data_object: dict[str, Any],
    event_id: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    """A Stripe event envelope as delivered to the webhook endpoint."""
    return {
        "id": event_id or f"evt_test_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "livemode": False,
        "data": {"object": data_object},
    }


def sign_payload(payload: str, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    secret = secret or settings.stripe_webhook_secret
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    return stripe_event


@pytest.fixture
def signed() -> Callable[[dict[str, Any] | str], tuple[bytes, str]]:
    """Factory: serialise an event (or take a raw body) and sign it; returns ``(body, header)``."""

    def _signed(event: dict[str, Any] | str) -> tuple[bytes, str]:
        payload = event if isinstance(event, str) else json.dumps(event)
        return payload.encode("utf-8"), sign_payload(payload)

    return _signed


@pytest.fixture
def deliver(client: AsyncClient, signed):
    """Factory: POST a signed event to the webhook endpoint."""

    async def _deliver(event: dict[str, Any]):
        body, header = signed(event)
        return await client.post(
            "/api/v1/webhooks/stripe",
            content=body,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

    return _deliver
