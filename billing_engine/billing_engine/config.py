"""Engine-level settings loaded from ``BILLING_``-prefixed environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Stripe API version the mapper and provider client are pinned to.
DEFAULT_STRIPE_API_VERSION = "2024-06-20"


class Settings(BaseSettings):
    """Billing engine configuration.

    All values can be overridden via environment variables prefixed with
    ``BILLING_`` (e.g. ``BILLING_SWEEP_PAGE_SIZE=50``) or through a ``.env``
    file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = "sqlite+aiosqlite:///.billsync/state.db"

    # Provider credentials.
    stripe_secret_key: SecretStr = SecretStr("")
    stripe_api_version: str = DEFAULT_STRIPE_API_VERSION

    # Full reconciliation sweep.
    sweep_page_size: int = Field(default=100, ge=1, le=100)
    sweep_max_pages: int = Field(default=20, ge=1)

    # Provider read retries (see billing_engine.provider.retry).
    provider_max_retries: int = Field(default=3, ge=0)
    provider_base_delay: float = Field(default=0.5, gt=0.0)
    provider_max_delay: float = Field(default=8.0, gt=0.0)

    # Dunning.
    dunning_window_days: int = Field(default=7, ge=0)
    dunning_dedupe_daily: bool = True

    # Mail transport.  When ``mail_mock`` is true nothing leaves the process.
    mail_mock: bool = True
    mail_from: str = "Billing <no-reply@example.com>"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: SecretStr = SecretStr("")
    smtp_starttls: bool = True
    smtp_timeout: float = 15.0

    @model_validator(mode="after")
    def _validate_smtp_when_live(self) -> Self:
        """Require SMTP host and credentials once mock delivery is disabled."""
        if self.mail_mock:
            return self
        missing = [
            name
            for name, value in (
                ("smtp_host", self.smtp_host),
                ("smtp_user", self.smtp_user),
                ("smtp_password", self.smtp_password.get_secret_value()),
            )
            if not value
        ]
        if missing:
            raise ValueError(
                "Live mail delivery requires SMTP settings; missing: " + ", ".join(missing)
            )
        return self


def load_settings() -> Settings:
    """Build a fresh :class:`Settings` from the current environment."""
    return Settings()
