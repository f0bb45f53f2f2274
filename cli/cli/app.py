"""billsync CLI application -- Typer-based operator interface.

Provides commands to create the state-store tables, register organizations,
run the reconciliation sweep and the dunning run, inspect mirrored invoices,
issue dashboard session tokens, and serve the API locally.  Human-readable
output goes to *stderr* via Rich; ``--json`` switches to machine-readable
output on *stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any, TypeVar

import typer
from billing_engine.analytics import aging_bucket, aging_days, is_at_risk, is_overdue
from billing_engine.config import Settings, load_settings
from billing_engine.dunning import DunningResult, DunningRunner, build_mailer
from billing_engine.dunning.templates import format_amount
from billing_engine.errors import (
    ProviderError,
    StoreError,
    TransientProviderError,
    UnresolvedTenantError,
)
from billing_engine.models.billing import outstanding_balance
from billing_engine.provider import BillingProvider, StripeProviderClient
from billing_engine.reconciliation import FullReconciliationSweep, SweepResult
from billing_engine.state.database import get_engine, get_session_factory
from billing_engine.state.repository import InvoiceRepository, OrganizationRepository, UserRepository
from billing_engine.state.sqlite_adapter import create_local_tables
from rich.console import Console
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from cli.display import display_dunning_result, display_invoice_table, display_sweep_result

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="billsync",
    help="billsync - Stripe billing reconciliation and dunning for multi-tenant SaaS",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log engine activity to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _load_settings() -> Settings:
    try:
        return load_settings()
    except ValueError as exc:
        console.print(f"[red]Invalid configuration: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _build_provider(settings: Settings) -> BillingProvider:
    """Construct the provider client from settings."""
    if not settings.stripe_secret_key.get_secret_value():
        console.print("[red]BILLING_STRIPE_SECRET_KEY is not set.[/red]")
        raise typer.Exit(code=3)
    return StripeProviderClient.from_settings(settings)


@asynccontextmanager
async def _engine_for(settings: Settings) -> AsyncIterator[AsyncEngine]:
    engine = get_engine(settings.database_url)
    try:
        yield engine
    finally:
        await engine.dispose()


def _fail(message: str, exc: Exception) -> typer.Exit:
    console.print(f"[red]{message}: {exc}[/red]")
    return typer.Exit(code=3)


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run_engine_command(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro* and turn engine failures into exit code 3."""
    try:
        return _run(coro)
    except UnresolvedTenantError as exc:
        raise _fail("Organization not found or has no Stripe customer", exc) from exc
    except TransientProviderError as exc:
        raise _fail("Stripe is temporarily unavailable; retry later", exc) from exc
    except ProviderError as exc:
        raise _fail("Stripe rejected the request", exc) from exc
    except (StoreError, SQLAlchemyError) as exc:
        raise _fail("State store error (run 'billsync init-db' first?)", exc) from exc


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the state-store tables if they do not exist.

    Intended for SQLite and first-time local setups; production PostgreSQL
    schemas are managed with alembic.
    """
    settings = _load_settings()

    async def _create() -> None:
        async with _engine_for(settings) as engine:
            await create_local_tables(engine)

    try:
        _run(_create())
    except SQLAlchemyError as exc:
        raise _fail("Failed to create tables", exc) from exc

    if _json_output:
        _emit_json({"ok": True, "database_url": settings.database_url})
    else:
        console.print("[green]State-store tables created.[/green]")


# ---------------------------------------------------------------------------
# create-org
# ---------------------------------------------------------------------------


@app.command("create-org")
def create_org(
    org_id: str = typer.Argument(..., help="Organization identifier."),
    name: str = typer.Argument(..., help="Display name."),
    owner: list[str] = typer.Option(
        [],
        "--owner",
        help="E-mail of an OWNER member.  Repeatable.",
    ),
    accountant: list[str] = typer.Option(
        [],
        "--accountant",
        help="E-mail of an ACCOUNTANT member.  Repeatable.",
    ),
    customer_id: str | None = typer.Option(
        None,
        "--customer-id",
        help="Existing Stripe customer reference to bind.",
    ),
) -> None:
    """Register an organization on the FREE plan with its members."""
    settings = _load_settings()

    async def _create() -> None:
        async with _engine_for(settings) as engine:
            async with get_session_factory(engine)() as session:
                await OrganizationRepository(session).create(org_id, name, stripe_customer_id=customer_id)
                users = UserRepository(session)
                for role, emails in (("OWNER", owner), ("ACCOUNTANT", accountant)):
                    for email in emails:
                        user = await users.get_by_email(email) or await users.create(email)
                        await users.add_membership(user.id, org_id, role)
                await session.commit()

    try:
        _run(_create())
    except IntegrityError as exc:
        raise _fail(f"Organization '{org_id}' or its customer reference already exists", exc) from exc
    except SQLAlchemyError as exc:
        raise _fail("State store error (run 'billsync init-db' first?)", exc) from exc

    if _json_output:
        _emit_json({"ok": True, "org_id": org_id, "owners": owner, "accountants": accountant})
    else:
        console.print(f"[green]Created organization[/green] [bold]{org_id}[/bold] ({name})")


# ---------------------------------------------------------------------------
# reconcile / sync
# ---------------------------------------------------------------------------


@app.command()
def reconcile() -> None:
    """Re-pull invoices and the latest subscription for every tenant."""
    settings = _load_settings()
    provider = _build_provider(settings)

    async def _sweep() -> SweepResult:
        async with _engine_for(settings) as engine:
            sweep = FullReconciliationSweep(
                get_session_factory(engine),
                provider,
                page_size=settings.sweep_page_size,
                max_pages=settings.sweep_max_pages,
            )
            return await sweep.reconcile_all()

    result = _run_engine_command(_sweep())

    if _json_output:
        _emit_json({"ok": True, **asdict(result)})
    else:
        display_sweep_result(console, result)


@app.command()
def sync(
    org_id: str = typer.Argument(..., help="Organization to reconcile."),
) -> None:
    """Reconcile a single organization with Stripe."""
    settings = _load_settings()
    provider = _build_provider(settings)

    async def _sweep_one() -> SweepResult:
        async with _engine_for(settings) as engine:
            sweep = FullReconciliationSweep(
                get_session_factory(engine),
                provider,
                page_size=settings.sweep_page_size,
                max_pages=settings.sweep_max_pages,
            )
            return await sweep.reconcile_org(org_id)

    result = _run_engine_command(_sweep_one())

    if _json_output:
        _emit_json({"ok": True, "org_id": org_id, **asdict(result)})
    else:
        display_sweep_result(console, result, title=f"Sync: {org_id}")


# ---------------------------------------------------------------------------
# dunning
# ---------------------------------------------------------------------------


@app.command()
def dunning(
    app_url: str | None = typer.Option(
        None,
        "--app-url",
        help="Dashboard URL used for payment links when an invoice has no hosted page.",
        envvar="API_APP_URL",
    ),
    window_days: int | None = typer.Option(
        None,
        "--window-days",
        min=0,
        help="Override the upcoming-invoice look-ahead (BILLING_DUNNING_WINDOW_DAYS).",
    ),
) -> None:
    """Notify tenant owners about overdue and soon-due invoices."""
    settings = _load_settings()
    mailer = build_mailer(settings)

    async def _dun() -> DunningResult:
        async with _engine_for(settings) as engine:
            async with get_session_factory(engine)() as session:
                runner = DunningRunner(
                    session,
                    mailer,
                    window_days=settings.dunning_window_days if window_days is None else window_days,
                    dedupe_daily=settings.dunning_dedupe_daily,
                    app_url=app_url,
                )
                return await runner.run_dunning()

    result = _run_engine_command(_dun())

    if _json_output:
        _emit_json({"ok": True, "mocked": settings.mail_mock, **asdict(result)})
    else:
        if settings.mail_mock:
            console.print("[dim]Mail transport is mocked; nothing left this machine.[/dim]")
        display_dunning_result(console, result)
    if result.failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# invoices
# ---------------------------------------------------------------------------


@app.command()
def invoices(
    org_id: str = typer.Argument(..., help="Organization whose invoices to list."),
    status: str | None = typer.Option(None, "--status", help="Invoice status filter, or ALL."),
    limit: int = typer.Option(20, "--limit", min=1, max=50, help="Maximum rows to show."),
) -> None:
    """List an organization's mirrored invoices, latest due date first."""
    settings = _load_settings()
    now = datetime.now(UTC)

    async def _list() -> list[dict[str, Any]]:
        async with _engine_for(settings) as engine:
            async with get_session_factory(engine)() as session:
                rows, _ = await InvoiceRepository(session).list_for_org(org_id, status=status, limit=limit)
        result = []
        for inv in rows:
            days = aging_days(inv.due_date, now)
            result.append(
                {
                    "invoice_id": inv.stripe_invoice_id,
                    "status": inv.status,
                    "amount_due": format_amount(inv.amount_due, inv.currency),
                    "amount_paid": format_amount(inv.amount_paid, inv.currency),
                    "outstanding": format_amount(outstanding_balance(inv.amount_due, inv.amount_paid), inv.currency),
                    "due_date": inv.due_date.date().isoformat() if inv.due_date else None,
                    "aging_days": days,
                    "aging_bucket": aging_bucket(days),
                    "overdue": is_overdue(days, inv.status),
                    "at_risk": is_at_risk(inv.due_date, inv.status, now),
                }
            )
        return result

    rows = _run_engine_command(_list())

    if _json_output:
        _emit_json(rows)
    elif not rows:
        console.print("[yellow]No invoices found.[/yellow]")
    else:
        display_invoice_table(console, org_id, rows)


# ---------------------------------------------------------------------------
# token
# ---------------------------------------------------------------------------


@app.command()
def token(
    email: str = typer.Argument(..., help="E-mail of the dashboard user."),
) -> None:
    """Issue a dashboard session token signed with API_SESSION_SECRET.

    The token is written to stdout so it can be captured by scripts.
    """
    from api.config import load_api_settings
    from api.security import SessionTokenManager

    api_settings = load_api_settings()
    manager = SessionTokenManager(
        api_settings.session_secret.get_secret_value(),
        api_settings.session_token_ttl_seconds,
    )
    issued = manager.issue(email)
    if _json_output:
        _emit_json({"email": email.strip().lower(), "token": issued})
    else:
        sys.stdout.write(issued + "\n")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind the API server to.", envvar="API_HOST"),
    port: int = typer.Option(8000, "--port", "-p", help="API server port.", envvar="API_PORT"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload on code changes."),
) -> None:
    """Run the billsync API with uvicorn."""
    import uvicorn

    config = uvicorn.Config(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] Webhook endpoint at http://{host}:{port}/api/v1/webhooks/stripe")
    console.print(f"[green]✓[/green] Health probe at http://{host}:{port}/health")

    try:
        uvicorn.Server(config).run()
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
