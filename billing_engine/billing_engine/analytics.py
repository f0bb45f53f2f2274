"""Receivables analytics over the local invoice mirror.

Pure functions: callers load rows and pass them in.  Outstanding amounts are
always floored at zero per invoice, so over-payment never shows up as a
negative receivable.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from billing_engine.models.billing import InvoiceStatus, outstanding_balance

AGING_BUCKETS: tuple[str, ...] = ("0-30", "31-60", "61-90", "90+", "n/a")

_SECONDS_PER_DAY = 86400


class _InvoiceLike(Protocol):
    status: str
    amount_due: int
    amount_paid: int
    due_date: datetime | None


def aging_days(due_date: datetime | None, now: datetime) -> int | None:
    """Whole days elapsed since *due_date*; negative when it is still ahead."""
    if due_date is None:
        return None
    return math.floor((now - due_date).total_seconds() / _SECONDS_PER_DAY)


def aging_bucket(days: int | None) -> str:
    if days is None:
        return "n/a"
    if days <= 30:
        return "0-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    return "90+"


def is_overdue(days: int | None, status: str) -> bool:
    """Overdue flag used by listings: a full day past due and not settled or voided."""
    return days is not None and days > 0 and status not in (InvoiceStatus.PAID.value, InvoiceStatus.VOID.value)


def is_at_risk(due_date: datetime | None, status: str, now: datetime, window: timedelta = timedelta(days=7)) -> bool:
    """Open invoice falling due within *window* from *now*."""
    if due_date is None or status != InvoiceStatus.OPEN.value:
        return False
    remaining = due_date - now
    return timedelta(0) < remaining <= window


@dataclass
class BucketRollup:
    count: int = 0
    outstanding: int = 0
    overdue: int = 0


def aging_rollup(invoices: Iterable[_InvoiceLike], now: datetime) -> dict[str, BucketRollup]:
    """Group invoices into aging buckets with counts and outstanding totals."""
    rollup = {name: BucketRollup() for name in AGING_BUCKETS}
    for inv in invoices:
        days = aging_days(inv.due_date, now)
        entry = rollup[aging_bucket(days)]
        entry.count += 1
        entry.outstanding += outstanding_balance(inv.amount_due, inv.amount_paid)
        if is_overdue(days, inv.status):
            entry.overdue += 1
    return rollup


@dataclass
class DunningActivity:
    total: int = 0
    upcoming: int = 0
    overdue: int = 0
    mocked: int = 0


def dunning_activity(metadata_rows: Iterable[dict[str, Any] | None]) -> DunningActivity:
    """Tally ``dunning.sent`` audit metadata by kind and delivery mode."""
    activity = DunningActivity()
    for meta in metadata_rows:
        meta = meta or {}
        activity.total += 1
        kind = meta.get("kind")
        if kind == "upcoming":
            activity.upcoming += 1
        elif kind == "overdue":
            activity.overdue += 1
        if meta.get("mocked"):
            activity.mocked += 1
    return activity


@dataclass
class KpiSummary:
    """Headline receivables KPIs.  Money values are minor units."""

    currency: str = "USD"
    mrr: int = 0
    arr: int = 0
    active_customers: int = 0
    arpa: float = 0.0
    collection_rate: float = 0.0
    dso: float = 0.0


def compute_kpis(
    *,
    paid_recent: Iterable[Any],
    issued_recent: Iterable[Any],
    open_receivables: Iterable[Any],
    active_customers: int,
) -> KpiSummary:
    """Compute MRR, ARR, ARPA, collection rate and DSO.

    Parameters
    ----------
    paid_recent:
        Paid invoices whose period ended in the trailing 30 days.  MRR is
        approximated as their total ``amount_paid``.
    issued_recent:
        All invoices whose period ended in the trailing 30 days; the
        collection rate is paid over due across them.
    open_receivables:
        ``OPEN`` and ``UNCOLLECTIBLE`` invoices; their outstanding total is
        the receivables balance used for DSO.
    active_customers:
        Subscriptions in an entitling status.
    """
    paid_recent = list(paid_recent)
    issued_recent = list(issued_recent)

    mrr = sum(inv.amount_paid or 0 for inv in paid_recent)
    due = sum(inv.amount_due or 0 for inv in issued_recent)
    paid = sum(inv.amount_paid or 0 for inv in issued_recent)
    receivables = sum(outstanding_balance(inv.amount_due, inv.amount_paid) for inv in open_receivables)
    avg_daily_sales = mrr / 30

    return KpiSummary(
        currency=(paid_recent[0].currency.upper() if paid_recent else "USD"),
        mrr=mrr,
        arr=mrr * 12,
        active_customers=active_customers,
        arpa=(mrr / active_customers) if active_customers > 0 else 0.0,
        collection_rate=(paid / due) if due > 0 else 0.0,
        dso=(receivables / avg_daily_sales) if avg_daily_sales > 0 else 0.0,
    )
