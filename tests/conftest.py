"""
Pytest configuration and fixtures.
"""
import os
import tempfile
from types import SimpleNamespace
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

# Settings are read on first import, so the environment must be in place first
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake_secret"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["RESEND_API_KEY"] = ""
os.environ["MEDIA_ROOT"] = tempfile.mkdtemp(prefix="proplinka-media-")
os.environ["APP_ENV"] = "test"

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.api import dependencies, routes
from proplinka.api.main import app
from proplinka.core.platform_settings import clear_settings_cache
from proplinka.core.rate_limit import RateLimiter
from proplinka.database.connection import get_db, get_engine, get_session_factory, seed_reference_data
from proplinka.database.models import Base, Profile
from proplinka.integrations.email_client import EmailClient
from proplinka.integrations.stripe_client import StripeClient
from tests.factories import create_profile


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, Any]:
    """Fresh in-memory database per test."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    clear_settings_cache()

    async with get_session_factory()() as session:
        await seed_reference_data(session)
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    clear_settings_cache()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[Any, Any]:
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def email_client() -> EmailClient:
    """Email client with no API key: sends are skipped."""
    return EmailClient()


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    client = AsyncMock(spec=StripeClient)
    client.create_customer.return_value = SimpleNamespace(id="cus_test_123")
    client.create_checkout_session.return_value = SimpleNamespace(
        id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    client.create_refund.return_value = SimpleNamespace(id="re_test_123", status="succeeded")
    return client


@pytest_asyncio.fixture
async def seller(db: AsyncSession) -> Profile:
    return await create_profile(db, email="seller@example.com", user_type="seller")


@pytest_asyncio.fixture
async def buyer(db: AsyncSession) -> Profile:
    return await create_profile(db, email="buyer@example.com", user_type="buyer")


@pytest_asyncio.fixture
async def admin(db: AsyncSession) -> Profile:
    return await create_profile(db, email="admin@example.com", role="admin")


@pytest_asyncio.fixture
async def moderator(db: AsyncSession) -> Profile:
    return await create_profile(db, email="moderator@example.com", role="moderator")


@pytest_asyncio.fixture
async def client(
    db: AsyncSession,
    redis_client: Any,
    email_client: EmailClient,
    mock_stripe_client: AsyncMock,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app, sharing the test session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_rate_limiter] = lambda: RateLimiter(
        redis_client=redis_client
    )
    app.dependency_overrides[dependencies.get_email_client] = lambda: email_client

    routes.webhook_handler.redis_client = redis_client
    routes.checkout_service._stripe_client = mock_stripe_client
    routes.refund_service._stripe_client = mock_stripe_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    routes.webhook_handler.redis_client = None
    routes.checkout_service._stripe_client = None
    routes.refund_service._stripe_client = None
