"""Shared fixtures for billing engine unit tests.

Provides an in-memory SQLite store, a session factory bound to it, a seeding
helper for tenants and members, and the in-memory provider fake from
:mod:`billing_fakes`.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest
import pytest_asyncio
from billing_fakes import FakeProvider
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.state.repository import OrganizationRepository, UserRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with all tables created."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def seed(session_factory) -> Callable[..., Awaitable[None]]:
    """Create an organization (optionally with a customer ref and members) and commit."""

    async def _seed(
        org_id: str = "org_1",
        *,
        name: str = "Acme Inc",
        customer_id: str | None = "cus_1",
        owners: tuple[str, ...] = (),
        accountants: tuple[str, ...] = (),
    ) -> None:
        async with session_factory() as session:
            await OrganizationRepository(session).create(org_id, name, stripe_customer_id=customer_id)
            users = UserRepository(session)
            for role, emails in (("OWNER", owners), ("ACCOUNTANT", accountants)):
                for email in emails:
                    user = await users.get_by_email(email) or await users.create(email)
                    await users.add_membership(user.id, org_id, role)
            await session.commit()

    return _seed
