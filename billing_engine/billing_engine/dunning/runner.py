"""Dunning run: notify tenant owners about overdue and soon-due invoices.

Re-send policy: a notification for a given (invoice, kind, recipient) goes
out at most once per UTC calendar day.  The ledger is the audit log itself:
every successful send appends a ``dunning.sent`` entry, and a run skips any
triple that already has one dated today.  Entries are committed after each
invoice so an interrupted run does not repeat completed notices.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dunning.classifier import DunningKind, classify
from billing_engine.dunning.mailer import Mailer
from billing_engine.dunning.templates import render_notice
from billing_engine.errors import MailDeliveryError
from billing_engine.models.billing import outstanding_balance
from billing_engine.reconciliation.engine import ReconciliationEngine
from billing_engine.state.repository import (
    DUNNING_SENT_ACTION,
    AuditRepository,
    InvoiceRepository,
    OrganizationRepository,
    UserRepository,
)
from billing_engine.telemetry.metrics import DUNNING_NOTIFICATIONS

logger = logging.getLogger(__name__)

OWNER_ROLE = "OWNER"


@dataclass(frozen=True)
class _Candidate:
    """Detached snapshot of an invoice that needs a notice."""

    invoice_id: str
    org_id: str
    kind: DunningKind
    outstanding: int
    currency: str
    due_date: datetime
    pay_url: str | None


@dataclass
class DunningResult:
    """Counters for one dunning run.

    ``scanned`` is every mirrored invoice the run looked at, including the
    paid, void and undated ones it skipped.
    """

    scanned: int = 0
    overdue: int = 0
    upcoming: int = 0
    sent: int = 0
    deduplicated: int = 0
    failed: int = 0


class DunningRunner:
    """Scan the local mirror and dispatch dunning notifications.

    Parameters
    ----------
    session:
        Session used for reads and ledger writes.
    mailer:
        Mail transport collaborator.
    window_days:
        Look-ahead for upcoming invoices.
    dedupe_daily:
        Apply the once-per-day re-send rule.  Disabling it re-notifies on
        every run.
    app_url:
        Public dashboard URL, used for the payment link when an invoice has
        no hosted page.
    """

    def __init__(
        self,
        session: AsyncSession,
        mailer: Mailer,
        *,
        window_days: int = 7,
        dedupe_daily: bool = True,
        app_url: str | None = None,
    ) -> None:
        self._session = session
        self._mailer = mailer
        self._window = timedelta(days=window_days)
        self._dedupe = dedupe_daily
        self._app_url = app_url.rstrip("/") if app_url else None
        self._invoices = InvoiceRepository(session)
        self._orgs = OrganizationRepository(session)
        self._users = UserRepository(session)
        self._audit = AuditRepository(session)
        self._engine = ReconciliationEngine(session)

    async def run_dunning(self, now: datetime | None = None) -> DunningResult:
        """Classify candidate invoices and notify every OWNER of the tenant."""
        now = now or datetime.now(UTC)
        result = DunningResult()

        result.scanned = await self._invoices.count_all()
        candidates = await self._invoices.list_unpaid_due_before(now + self._window)

        pending: list[_Candidate] = []
        for invoice in candidates:
            kind = classify(invoice, now, self._window)
            if kind is None or invoice.due_date is None:
                continue
            if kind is DunningKind.OVERDUE:
                result.overdue += 1
            else:
                result.upcoming += 1
            pay_url = invoice.hosted_invoice_url
            if pay_url is None and self._app_url:
                pay_url = f"{self._app_url}/billing?orgId={invoice.org_id}"
            pending.append(
                _Candidate(
                    invoice_id=invoice.stripe_invoice_id,
                    org_id=invoice.org_id,
                    kind=kind,
                    outstanding=outstanding_balance(invoice.amount_due, invoice.amount_paid),
                    currency=invoice.currency,
                    due_date=invoice.due_date,
                    pay_url=pay_url,
                )
            )

        already_sent: set[tuple[str, str, str]] = set()
        if self._dedupe and pending:
            day_start = datetime.combine(now.astimezone(UTC).date(), time.min, tzinfo=UTC)
            already_sent = await self._audit.dunning_sent_keys(
                [c.invoice_id for c in pending],
                since=day_start,
            )

        org_names: dict[str, str] = {}
        owners: dict[str, list[str]] = {}
        for candidate in pending:
            org_id = candidate.org_id
            if org_id not in owners:
                owners[org_id] = await self._users.emails_with_role(org_id, OWNER_ROLE)
                org = await self._orgs.get(org_id)
                org_names[org_id] = org.name if org is not None else org_id

            recipients = owners[org_id]
            if not recipients:
                logger.info("No OWNER members for org %s; invoice %s not notified", org_id, candidate.invoice_id)
                continue

            for to in recipients:
                key = (candidate.invoice_id, candidate.kind.value, to)
                if key in already_sent:
                    result.deduplicated += 1
                    continue
                if await self._notify(candidate, to, org_names[org_id]):
                    result.sent += 1
                    already_sent.add(key)
                else:
                    result.failed += 1

            await self._session.commit()

        logger.info(
            "Dunning run: scanned=%d overdue=%d upcoming=%d sent=%d deduplicated=%d failed=%d",
            result.scanned,
            result.overdue,
            result.upcoming,
            result.sent,
            result.deduplicated,
            result.failed,
        )
        return result

    async def _notify(self, candidate: _Candidate, to: str, org_name: str) -> bool:
        notice = render_notice(
            candidate.kind,
            invoice_id=candidate.invoice_id,
            org_name=org_name,
            outstanding=candidate.outstanding,
            currency=candidate.currency,
            due_date=candidate.due_date,
            pay_url=candidate.pay_url,
        )
        try:
            sent = await self._mailer.send(to, notice.subject, notice.html)
        except MailDeliveryError as exc:
            logger.error(
                "Dunning %s notice for %s to %s failed: %s",
                candidate.kind.value,
                candidate.invoice_id,
                to,
                exc,
            )
            return False

        DUNNING_NOTIFICATIONS.labels(kind=candidate.kind.value, mocked=str(sent.mocked).lower()).inc()
        await self._engine.record_audit(
            action=DUNNING_SENT_ACTION,
            org_id=candidate.org_id,
            entity_type="invoice",
            entity_id=candidate.invoice_id,
            metadata={"to": to, "kind": candidate.kind.value, "mocked": sent.mocked},
        )
        return True
