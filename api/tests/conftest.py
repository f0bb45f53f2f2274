"""Shared fixtures for billsync API tests.

Every test gets a fresh in-memory SQLite store, a spec'd provider mock whose
signature check is the real Stripe HMAC verification, the mock mailer, and
an ``AsyncClient`` bound to the app through ``ASGITransport``.  Session
tokens are issued with the same secret the app verifies with, so requests
go through the real user lookup.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from billing_engine.config import Settings
from billing_engine.dunning.mailer import MockMailer
from billing_engine.provider import StripeProviderClient
from billing_engine.state.repository import OrganizationRepository, UserRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings
from api.dependencies import (
    get_engine_settings,
    get_mailer,
    get_provider,
    get_session_factory,
    get_settings,
)
from api.main import create_app
from api.security import SessionTokenManager
from api_payloads import CRON_SECRET, SESSION_SECRET, WEBHOOK_SECRET

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    return APISettings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        stripe_webhook_secret=WEBHOOK_SECRET,
        cron_secret=CRON_SECRET,
        stripe_price_id_pro="price_pro",
        app_url="https://app.billsync.test",
        session_secret=SESSION_SECRET,
    )


@pytest.fixture()
def engine_settings() -> Settings:
    return Settings(_env_file=None, stripe_secret_key="sk_test_123", mail_mock=True)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine():
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture()
def seed(session_factory) -> Callable[..., Awaitable[None]]:
    """Create an organization with members and commit."""

    async def _seed(
        org_id: str = "org_1",
        *,
        name: str = "Acme Inc",
        customer_id: str | None = "cus_1",
        plan: str = "FREE",
        owners: tuple[str, ...] = (),
        accountants: tuple[str, ...] = (),
    ) -> None:
        async with session_factory() as session:
            orgs = OrganizationRepository(session)
            await orgs.create(org_id, name, stripe_customer_id=customer_id)
            if plan != "FREE":
                await orgs.set_plan(org_id, plan)
            users = UserRepository(session)
            for role, emails in (("OWNER", owners), ("ACCOUNTANT", accountants)):
                for email in emails:
                    user = await users.get_by_email(email) or await users.create(email)
                    await users.add_membership(user.id, org_id, role)
            await session.commit()

    return _seed


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def provider() -> MagicMock:
    """Provider mock; async methods are ``AsyncMock`` through the spec."""
    real = StripeProviderClient("sk_test_123", api_version="2024-06-20")
    mock = MagicMock(spec=StripeProviderClient)
    mock.api_version = "2024-06-20"
    mock.verify_signature.side_effect = real.verify_signature
    return mock


@pytest.fixture()
def mailer() -> MockMailer:
    return MockMailer()


@pytest.fixture()
def tokens() -> SessionTokenManager:
    return SessionTokenManager(SESSION_SECRET)


@pytest.fixture()
def auth_headers(tokens) -> Callable[[str], dict[str, str]]:
    def _headers(email: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens.issue(email)}"}

    return _headers


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings, engine_settings, session_factory, provider, mailer):
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_engine_settings] = lambda: engine_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_provider] = lambda: provider
    application.dependency_overrides[get_mailer] = lambda: mailer
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
