"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    """Deployment environment label."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_HOST=0.0.0.0``) or through a ``.env`` file in the
    working directory.  Engine-level settings (Stripe key, mail transport,
    sweep and dunning tuning) live in :class:`billing_engine.config.Settings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Async SQLAlchemy URL; asyncpg in production, aiosqlite locally.
    database_url: str = "sqlite+aiosqlite:///.billsync/state.db"

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Webhook endpoint signing secret and accepted signature age.
    stripe_webhook_secret: SecretStr = SecretStr("")
    webhook_tolerance_seconds: int = Field(default=300, ge=1)

    # Shared secret expected in the ``x-cron-key`` header.
    cron_secret: SecretStr = SecretStr("")

    # Price the checkout endpoint subscribes tenants to.
    stripe_price_id_pro: str = ""

    # Public dashboard URL used for checkout redirects and payment links.
    app_url: str = "http://localhost:3000"

    # HMAC key for dashboard session tokens.
    session_secret: SecretStr = SecretStr("billsync-dev-secret-change-in-production")
    session_token_ttl_seconds: int = Field(default=86400, ge=60)

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    @model_validator(mode="after")
    def _validate_production_secrets(self) -> Self:
        """Refuse to run outside dev with the default session secret or no webhook secret."""
        if self.platform_env is PlatformEnv.DEV:
            return self
        if self.session_secret.get_secret_value() == "billsync-dev-secret-change-in-production":
            raise ValueError(f"API_SESSION_SECRET must be set in {self.platform_env.value} mode")
        if not self.stripe_webhook_secret.get_secret_value():
            raise ValueError(f"API_STRIPE_WEBHOOK_SECRET must be set in {self.platform_env.value} mode")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
