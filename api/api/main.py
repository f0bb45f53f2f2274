"""FastAPI application entry-point for the billsync control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_engine.errors import (
    MappingError,
    ProviderError,
    SignatureError,
    StoreError,
    TransientProviderError,
    UnresolvedTenantError,
)
from billing_engine.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_engine,
    dispose_mailer,
    dispose_provider,
    get_engine_settings,
    init_engine,
    init_mailer,
    init_provider,
)
from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.routers import analytics, billing, cron, health, invoices, webhooks
from api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)

# Seconds a caller should wait before retrying after a transient provider failure.
_RETRY_AFTER_SECONDS = "30"


def _configure_json_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Validate engine settings (fails fast on incomplete SMTP config).
    - Initialise the async database engine and, in dev or on SQLite,
      create missing tables (production uses Alembic migrations).
    - Construct the provider client and the dunning mailer.

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()
    engine_settings = get_engine_settings()

    if settings.structured_logging:
        _configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)

    init_provider(engine_settings)
    logger.info("Provider client initialised (api_version=%s)", engine_settings.stripe_api_version)

    init_mailer(engine_settings)
    logger.info("Mailer initialised (%s)", "mock" if engine_settings.mail_mock else "smtp")

    yield

    dispose_mailer()
    dispose_provider()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="billsync API",
        description="Billing state reconciliation between Stripe and the local store.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", CORRELATION_HEADER, "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(analytics.router, prefix="/api/v1")

    # Probes live outside /api/v1.
    app.include_router(health.router)
    app.include_router(metrics_router.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(SignatureError)
    async def signature_error_handler(request: Request, exc: SignatureError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": f"Webhook signature rejected: {exc}"})

    @app.exception_handler(MappingError)
    async def mapping_error_handler(request: Request, exc: MappingError) -> JSONResponse:
        logger.warning("Unmappable provider object on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(UnresolvedTenantError)
    async def unresolved_tenant_handler(request: Request, exc: UnresolvedTenantError) -> JSONResponse:
        logger.warning("Unresolved tenant on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": "No organization owns this provider customer"})

    @app.exception_handler(TransientProviderError)
    async def transient_provider_handler(request: Request, exc: TransientProviderError) -> JSONResponse:
        logger.warning("Transient provider failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Payment provider temporarily unavailable"},
            headers={"Retry-After": _RETRY_AFTER_SECONDS},
        )

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
        logger.error("Provider error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Payment provider rejected the request"})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
