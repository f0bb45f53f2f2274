"""Subject and HTML body for dunning e-mails."""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from billing_engine.dunning.classifier import DunningKind

# ISO 4217 currencies the provider bills in whole units.
ZERO_DECIMAL_CURRENCIES: frozenset[str] = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)  # fmt: skip


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


def format_amount(minor_units: int, currency: str) -> str:
    """Render integer minor units as a human amount, e.g. ``150.00 USD``."""
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return f"{minor_units:,} {code}"
    major = Decimal(minor_units) / Decimal(100)
    return f"{major:,.2f} {code}"


def render_notice(
    kind: DunningKind,
    *,
    invoice_id: str,
    org_name: str,
    outstanding: int,
    currency: str,
    due_date: datetime,
    pay_url: str | None,
) -> RenderedEmail:
    """Render the e-mail for one (invoice, kind) notification.

    Every interpolated value is HTML-escaped.
    """
    if kind is DunningKind.OVERDUE:
        subject = f"[Action Required] Overdue invoice {invoice_id} for {org_name}"
        lead = "The following invoice is past due. Please arrange payment as soon as possible."
    else:
        subject = f"[Heads-up] Upcoming invoice {invoice_id} for {org_name}"
        lead = "The following invoice is due soon."

    e = html.escape
    link = f'<p><a href="{e(pay_url, quote=True)}">View and pay invoice</a></p>' if pay_url else ""
    body = (
        f"<p>{e(lead)}</p>"
        "<table>"
        f"<tr><td>Organization</td><td>{e(org_name)}</td></tr>"
        f"<tr><td>Invoice</td><td>{e(invoice_id)}</td></tr>"
        f"<tr><td>Amount due</td><td>{e(format_amount(outstanding, currency))}</td></tr>"
        f"<tr><td>Due date</td><td>{e(due_date.date().isoformat())}</td></tr>"
        "</table>"
        f"{link}"
    )
    return RenderedEmail(subject=subject, html=body)
