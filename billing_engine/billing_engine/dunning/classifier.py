"""Overdue / upcoming classification of a single invoice.

Overdue requires a due date strictly in the past and upcoming requires one
at or after *now*, so an invoice can never be both.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from billing_engine.models.billing import InvoiceStatus


class DunningKind(str, Enum):
    OVERDUE = "overdue"
    UPCOMING = "upcoming"


class _InvoiceLike(Protocol):
    status: str
    amount_due: int
    amount_paid: int
    due_date: datetime | None


def is_paid(amount_due: int, amount_paid: int, status: str) -> bool:
    return amount_paid >= amount_due or status.upper() == InvoiceStatus.PAID.value


def classify(
    invoice: _InvoiceLike,
    now: datetime,
    window: timedelta = timedelta(days=7),
) -> DunningKind | None:
    """Return the dunning classification for *invoice* at *now*, if any.

    Parameters
    ----------
    invoice:
        Any object exposing ``status``, ``amount_due``, ``amount_paid`` and
        ``due_date`` (an ORM row or a normalized record).
    now:
        Reference time (timezone-aware).
    window:
        How far ahead an open invoice counts as upcoming.  The bound is
        inclusive.
    """
    due = invoice.due_date
    if due is None or is_paid(invoice.amount_due, invoice.amount_paid, invoice.status):
        return None

    status = invoice.status.upper()
    if due < now:
        return DunningKind.OVERDUE if status != InvoiceStatus.VOID.value else None
    if status == InvoiceStatus.OPEN.value and due <= now + window:
        return DunningKind.UPCOMING
    return None
