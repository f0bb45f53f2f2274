"""Rich output formatting for the billsync CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from billing_engine.dunning import DunningResult
    from billing_engine.reconciliation import SweepResult


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "PAID": "green",
    "OPEN": "yellow",
    "DRAFT": "dim",
    "UNCOLLECTIBLE": "red",
    "VOID": "dim red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


def display_sweep_result(console: Console, result: SweepResult, *, title: str = "Reconciliation Sweep") -> None:
    """Render the counters of a sweep run.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    result:
        Counters returned by the sweep.
    title:
        Panel title.
    """
    lines = [
        f"[bold]Organizations:[/bold]  {result.tenants_scanned}",
        f"[bold]Invoices:[/bold]       {result.invoices_upserted}",
        f"[bold]Subscriptions:[/bold]  {result.subscriptions_synced}",
    ]
    if result.records_skipped:
        lines.append(f"[bold]Skipped:[/bold]        [yellow]{result.records_skipped}[/yellow]")
    console.print(Panel("\n".join(lines), title=title, border_style="blue"))


# ---------------------------------------------------------------------------
# Dunning
# ---------------------------------------------------------------------------


def display_dunning_result(console: Console, result: DunningResult) -> None:
    """Render the counters of a dunning run as a two-column table."""
    table = Table(title="Dunning Run", show_header=True, header_style="bold")
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")

    table.add_row("Scanned", str(result.scanned))
    table.add_row("Overdue", str(result.overdue))
    table.add_row("Upcoming", str(result.upcoming))
    table.add_row("Sent", f"[green]{result.sent}[/green]")
    table.add_row("Already sent today", f"[dim]{result.deduplicated}[/dim]")
    failed = f"[red]{result.failed}[/red]" if result.failed else "0"
    table.add_row("Failed", failed)

    console.print(table)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def display_invoice_table(console: Console, org_id: str, rows: Sequence[dict[str, Any]]) -> None:
    """Render mirrored invoices with their aging bucket and flags.

    Each row is a plain dict as produced by the ``invoices`` command.
    """
    table = Table(title=f"Invoices: {org_id}", show_header=True, header_style="bold")
    table.add_column("Invoice", style="bold")
    table.add_column("Status")
    table.add_column("Due", justify="right")
    table.add_column("Paid", justify="right")
    table.add_column("Outstanding", justify="right")
    table.add_column("Due Date")
    table.add_column("Aging")
    table.add_column("Flags")

    for row in rows:
        flags = []
        if row["overdue"]:
            flags.append("[red]overdue[/red]")
        if row["at_risk"]:
            flags.append("[yellow]at risk[/yellow]")
        table.add_row(
            row["invoice_id"],
            _coloured_status(row["status"]),
            row["amount_due"],
            row["amount_paid"],
            row["outstanding"],
            row["due_date"] or "-",
            row["aging_bucket"],
            " ".join(flags) or "-",
        )

    console.print(table)
