"""Per-organization receivables analytics (Pro plan)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from billing_engine.analytics import (
    BucketRollup,
    DunningActivity,
    KpiSummary,
    aging_rollup,
    compute_kpis,
    dunning_activity,
)
from billing_engine.models.billing import PRO_STATUSES, InvoiceStatus
from billing_engine.state.repository import AuditRepository, InvoiceRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Trailing window for dunning activity and the KPI summary.
TRAILING_WINDOW = timedelta(days=30)


class AnalyticsService:
    """Composition layer over the invoice, subscription and audit repositories."""

    def __init__(self, session: AsyncSession) -> None:
        self._invoices = InvoiceRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._audit = AuditRepository(session)

    async def aging(self, org_id: str, now: datetime | None = None) -> dict[str, BucketRollup]:
        """Bucket every invoice of the organization by days past due."""
        now = now or datetime.now(UTC)
        return aging_rollup(await self._invoices.list_all_for_org(org_id), now)

    async def dunning(self, org_id: str, now: datetime | None = None) -> DunningActivity:
        """Count dunning notices sent for the organization in the trailing window."""
        since = (now or datetime.now(UTC)) - TRAILING_WINDOW
        rows = await self._audit.list_dunning_since(since, org_ids=[org_id])
        return dunning_activity(row.metadata_json for row in rows)

    async def summary(self, org_id: str, now: datetime | None = None) -> KpiSummary:
        """MRR, ARR, active customers, ARPA, collection rate and DSO.

        MRR is approximated as the amount paid on invoices whose period ended
        in the trailing window.
        """
        since = (now or datetime.now(UTC)) - TRAILING_WINDOW
        paid_recent = await self._invoices.list_period_end_since(org_id, since, status=InvoiceStatus.PAID.value)
        issued_recent = await self._invoices.list_period_end_since(org_id, since)
        open_receivables = await self._invoices.list_by_status(
            org_id, [InvoiceStatus.OPEN.value, InvoiceStatus.UNCOLLECTIBLE.value]
        )
        active = await self._subscriptions.count_for_org(org_id, sorted(PRO_STATUSES))
        return compute_kpis(
            paid_recent=paid_recent,
            issued_recent=issued_recent,
            open_receivables=open_receivables,
            active_customers=active,
        )
