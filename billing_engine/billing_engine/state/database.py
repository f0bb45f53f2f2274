"""Engine construction for the billsync state store.

The backend follows the URL.  ``postgresql+asyncpg`` gets a pooled engine
with server-side statement and lock timeouts.  ``sqlite+aiosqlite`` is
delegated to :mod:`billing_engine.state.sqlite_adapter`.  Bare
``postgres://`` / ``postgresql://`` URLs, the form most hosting dashboards
hand out, are pointed at asyncpg.

Sessions keep attributes loaded after commit: the sweep and the dunning
runner commit per tenant or per invoice and keep reading the rows they hold.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from billing_engine.state.sqlite_adapter import get_local_engine

logger = logging.getLogger(__name__)

_STATEMENT_TIMEOUT_MS = 30_000
_LOCK_TIMEOUT_MS = 10_000


def normalise_database_url(database_url: str) -> URL:
    """Parse *database_url*, selecting the asyncpg driver for bare PostgreSQL URLs."""
    url = make_url(database_url)
    if url.drivername in ("postgres", "postgresql"):
        url = url.set(drivername="postgresql+asyncpg")
    return url


def get_engine(database_url: str, *, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL or SQLite URL.  ``sqlite+aiosqlite://`` without a path
        is an in-memory store.
    pool_size, max_overflow:
        Connection pool bounds for PostgreSQL; SQLite ignores them.

    Raises
    ------
    ValueError
        For any backend other than PostgreSQL or SQLite.
    """
    url = normalise_database_url(database_url)
    backend = url.get_backend_name()

    if backend == "sqlite":
        return get_local_engine(url.database or ":memory:")
    if backend != "postgresql":
        raise ValueError(f"Unsupported database backend {backend!r}; use PostgreSQL or SQLite")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={
            "server_settings": {
                "application_name": "billsync",
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
            }
        },
    )
    logger.info(
        "State store %s (pool_size=%d max_overflow=%d)",
        url.render_as_string(hide_password=True),
        pool_size,
        max_overflow,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to *engine*; callers own commit and rollback."""
    return async_sessionmaker(engine, expire_on_commit=False)
