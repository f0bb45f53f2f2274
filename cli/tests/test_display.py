"""Tests for cli/cli/display.py -- Rich output formatting.

Output is captured via a Console writing to a StringIO buffer.
"""

from __future__ import annotations

import io

from billing_engine.dunning import DunningResult
from billing_engine.reconciliation import SweepResult
from rich.console import Console

from cli.display import (
    _STATUS_COLOURS,
    _coloured_status,
    display_dunning_result,
    display_invoice_table,
    display_sweep_result,
)


def _capture_console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    return Console(file=buf, width=160, force_terminal=False), buf


class TestColouredStatus:
    def test_known_statuses(self) -> None:
        for status, colour in _STATUS_COLOURS.items():
            assert _coloured_status(status) == f"[{colour}]{status}[/{colour}]"

    def test_unknown_status_white(self) -> None:
        assert _coloured_status("MYSTERY") == "[white]MYSTERY[/white]"


def test_sweep_result_panel() -> None:
    console, buf = _capture_console()
    display_sweep_result(console, SweepResult(tenants_scanned=3, invoices_upserted=12, subscriptions_synced=2))

    out = buf.getvalue()
    assert "Reconciliation Sweep" in out
    assert "12" in out
    assert "Skipped" not in out


def test_sweep_result_reports_skips() -> None:
    console, buf = _capture_console()
    display_sweep_result(console, SweepResult(tenants_scanned=1, records_skipped=4), title="Sync: org_1")

    out = buf.getvalue()
    assert "Sync: org_1" in out
    assert "Skipped" in out


def test_dunning_result_table() -> None:
    console, buf = _capture_console()
    display_dunning_result(console, DunningResult(scanned=5, overdue=2, upcoming=1, sent=3, failed=1))

    out = buf.getvalue()
    assert "Dunning Run" in out
    assert "Already sent today" in out
    assert "Failed" in out


def test_invoice_table_flags() -> None:
    console, buf = _capture_console()
    rows = [
        {
            "invoice_id": "in_late",
            "status": "OPEN",
            "amount_due": "49.00 USD",
            "amount_paid": "0.00 USD",
            "outstanding": "49.00 USD",
            "due_date": "2026-05-01",
            "aging_days": 12,
            "aging_bucket": "0-30",
            "overdue": True,
            "at_risk": False,
        },
        {
            "invoice_id": "in_nodue",
            "status": "DRAFT",
            "amount_due": "10.00 USD",
            "amount_paid": "0.00 USD",
            "outstanding": "10.00 USD",
            "due_date": None,
            "aging_days": None,
            "aging_bucket": "n/a",
            "overdue": False,
            "at_risk": False,
        },
    ]

    display_invoice_table(console, "org_1", rows)

    out = buf.getvalue()
    assert "Invoices: org_1" in out
    assert "in_late" in out
    assert "overdue" in out
    assert "n/a" in out
