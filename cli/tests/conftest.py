"""Shared fixtures for CLI tests.

Each test gets its own SQLite file under ``tmp_path`` and a spec'd provider
mock patched in place of the Stripe client factory, so no command touches
the network.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from billing_engine.provider import InvoicePage, StripeProviderClient
from typer.testing import CliRunner

from cli.app import app


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    return {
        "BILLING_DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        "BILLING_STRIPE_SECRET_KEY": "sk_test_cli",
        "BILLING_MAIL_MOCK": "true",
        "API_SESSION_SECRET": "cli-test-secret",
    }


@pytest.fixture
def provider(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    mock = MagicMock(spec=StripeProviderClient)
    mock.api_version = "2024-06-20"
    mock.list_invoices.return_value = InvoicePage()
    mock.latest_subscription.return_value = None
    monkeypatch.setattr("cli.app._build_provider", lambda settings: mock)
    return mock


@pytest.fixture
def invoke(cli_env: dict[str, str]) -> Callable[..., Any]:
    runner = CliRunner()

    def _invoke(*args: str, env: dict[str, str] | None = None) -> Any:
        return runner.invoke(app, list(args), env={**cli_env, **(env or {})})

    return _invoke


@pytest.fixture
def initialised(invoke) -> None:
    result = invoke("init-db")
    assert result.exit_code == 0, result.output
