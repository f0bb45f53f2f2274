"""FastAPI dependency injection for settings, sessions, provider, mailer, and identity."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Annotated

from billing_engine.config import Settings, load_settings
from billing_engine.dunning.mailer import Mailer, build_mailer
from billing_engine.license.feature_flags import (
    Feature,
    get_required_tier,
    is_feature_enabled,
)
from billing_engine.provider import BillingProvider, StripeProviderClient
from billing_engine.state.database import get_engine
from billing_engine.state.database import get_session_factory as _factory_for
from billing_engine.state.repository import OrganizationRepository
from fastapi import Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.security import (
    OWNER,
    DatabaseUserLookup,
    SessionTokenManager,
    SessionUser,
    SessionUserLookup,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> Settings:
    """Return the cached billing-engine :class:`Settings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[Settings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The sweep opens one session per tenant, so cron routes take the factory
    rather than a request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(
    factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------

_provider: BillingProvider | None = None


def init_provider(settings: Settings) -> BillingProvider:
    """Create and cache the global provider client."""
    global _provider  # noqa: PLW0603
    _provider = StripeProviderClient.from_settings(settings)
    return _provider


def dispose_provider() -> None:
    global _provider  # noqa: PLW0603
    _provider = None


def get_provider() -> BillingProvider:
    """Return the cached provider client."""
    if _provider is None:
        raise RuntimeError(
            "Provider client has not been initialised. Ensure init_provider() is called during application startup."
        )
    return _provider


ProviderDep = Annotated[BillingProvider, Depends(get_provider)]

# ---------------------------------------------------------------------------
# Mailer
# ---------------------------------------------------------------------------

_mailer: Mailer | None = None


def init_mailer(settings: Settings) -> Mailer:
    """Create and cache the global dunning mailer."""
    global _mailer  # noqa: PLW0603
    _mailer = build_mailer(settings)
    return _mailer


def dispose_mailer() -> None:
    global _mailer  # noqa: PLW0603
    _mailer = None


def get_mailer() -> Mailer:
    """Return the cached mailer."""
    if _mailer is None:
        raise RuntimeError(
            "Mailer has not been initialised. Ensure init_mailer() is called during application startup."
        )
    return _mailer


MailerDep = Annotated[Mailer, Depends(get_mailer)]

# ---------------------------------------------------------------------------
# Authenticated user
# ---------------------------------------------------------------------------


def get_token_manager(settings: SettingsDep) -> SessionTokenManager:
    return SessionTokenManager(
        settings.session_secret.get_secret_value(),
        settings.session_token_ttl_seconds,
    )


def get_user_lookup(
    session: SessionDep,
    tokens: Annotated[SessionTokenManager, Depends(get_token_manager)],
) -> SessionUserLookup:
    """Return the default database-backed :class:`SessionUserLookup`."""
    return DatabaseUserLookup(session, tokens)


UserLookupDep = Annotated[SessionUserLookup, Depends(get_user_lookup)]


def _bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(request: Request, lookup: UserLookupDep) -> SessionUser:
    """Resolve the bearer token to a user or fail with 401."""
    user = await lookup.lookup(_bearer_token(request))
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


CurrentUserDep = Annotated[SessionUser, Depends(get_current_user)]


@dataclass(frozen=True)
class OrgContext:
    """The organization a request acts on and the caller's role in it."""

    org_id: str
    role: str
    user: SessionUser


def resolve_org(
    user: CurrentUserDep,
    org_id: Annotated[str | None, Query()] = None,
) -> OrgContext:
    """Pick the target organization and check membership.

    Without an ``org_id`` query parameter the user's default membership is
    used.
    """
    target = org_id or user.default_org()
    if not target:
        raise HTTPException(status_code=400, detail="org_id is required")
    role = user.role_in(target)
    if role is None:
        raise HTTPException(status_code=403, detail="Not a member of this organization")
    return OrgContext(org_id=target, role=role, user=user)


OrgDep = Annotated[OrgContext, Depends(resolve_org)]


def require_owner(ctx: OrgDep) -> OrgContext:
    """Allow only the organization's OWNER through."""
    if ctx.role != OWNER:
        raise HTTPException(status_code=403, detail="Only the organization owner can perform this action")
    return ctx


OwnerDep = Annotated[OrgContext, Depends(require_owner)]

# ---------------------------------------------------------------------------
# Feature-tier gating
# ---------------------------------------------------------------------------


def require_feature(feature: Feature) -> Callable[..., OrgContext]:
    """Return a FastAPI dependency that enforces a plan-tier feature gate.

    Reads the organization's cached ``plan``, verifies the requested
    :class:`Feature` is enabled for it, and returns the :class:`OrgContext`.
    Raises ``HTTPException(403)`` with an upgrade message otherwise.

    Usage::

        @router.get("/some-endpoint")
        async def some_endpoint(
            ctx: OrgContext = Depends(require_feature(Feature.KPI_SUMMARY)),
        ):
            ...
    """

    async def _gate(ctx: OrgDep, session: SessionDep) -> OrgContext:
        org = await OrganizationRepository(session).get(ctx.org_id)
        plan = org.plan if org is not None else "FREE"
        if not is_feature_enabled(plan, feature):
            required_tier = get_required_tier(feature)
            raise HTTPException(
                status_code=403,
                detail=(
                    f"Feature '{feature.value}' requires the "
                    f"{required_tier.value.title()} plan. "
                    f"Your current plan is '{plan}'. "
                    f"Please upgrade to access this feature."
                ),
            )
        return ctx

    return _gate  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Cron shared secret
# ---------------------------------------------------------------------------


def require_cron_key(
    settings: SettingsDep,
    x_cron_key: Annotated[str | None, Header()] = None,
) -> None:
    """Check the ``x-cron-key`` header against ``API_CRON_SECRET``.

    An unset secret rejects every call.
    """
    expected = settings.cron_secret.get_secret_value()
    if not expected or not x_cron_key or not hmac.compare_digest(expected, x_cron_key):
        logger.warning("Rejected cron call with missing or invalid key")
        raise HTTPException(status_code=401, detail="unauthorized")
