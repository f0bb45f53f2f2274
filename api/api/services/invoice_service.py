"""Paginated invoice listing with aging fields and per-page rollups."""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime

from billing_engine.analytics import AGING_BUCKETS, aging_bucket, aging_days, is_at_risk, is_overdue
from billing_engine.dunning.templates import format_amount
from billing_engine.models.billing import outstanding_balance
from billing_engine.state.repository import InvoiceRepository
from billing_engine.state.tables import InvoiceTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas import InvoiceFlags, InvoiceListResponse, InvoiceRollups, InvoiceRow

logger = logging.getLogger(__name__)


def _to_row(inv: InvoiceTable, now: datetime) -> InvoiceRow:
    days = aging_days(inv.due_date, now)
    return InvoiceRow(
        stripe_invoice_id=inv.stripe_invoice_id,
        currency=inv.currency,
        amount_due=inv.amount_due,
        amount_paid=inv.amount_paid,
        amount_due_formatted=format_amount(inv.amount_due, inv.currency),
        amount_paid_formatted=format_amount(inv.amount_paid, inv.currency),
        outstanding=outstanding_balance(inv.amount_due, inv.amount_paid),
        status=inv.status,
        due_date=inv.due_date,
        period_start=inv.period_start,
        period_end=inv.period_end,
        hosted_invoice_url=inv.hosted_invoice_url,
        created=inv.created,
        aging_days=days,
        aging_bucket=aging_bucket(days),
        flags=InvoiceFlags(
            overdue=is_overdue(days, inv.status),
            at_risk=is_at_risk(inv.due_date, inv.status, now),
        ),
    )


class InvoiceService:
    """Read-side invoice queries for one organization."""

    def __init__(self, session: AsyncSession) -> None:
        self._invoices = InvoiceRepository(session)

    async def list_invoices(
        self,
        org_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: str | None = None,
        search: str | None = None,
        now: datetime | None = None,
    ) -> InvoiceListResponse:
        """Return one page of invoices.

        Rollups count the rows on the returned page only.
        """
        now = now or datetime.now(UTC)
        page = max(1, page)
        rows, total = await self._invoices.list_for_org(
            org_id,
            status=status,
            search=search,
            limit=limit,
            offset=(page - 1) * limit,
        )
        data = [_to_row(inv, now) for inv in rows]

        buckets = dict.fromkeys(AGING_BUCKETS, 0)
        for row in data:
            buckets[row.aging_bucket] += 1

        return InvoiceListResponse(
            page=page,
            limit=limit,
            total=total,
            pages=max(1, math.ceil(total / limit)),
            data=data,
            rollups=InvoiceRollups(
                buckets=buckets,
                overdue=sum(1 for row in data if row.flags.overdue),
                at_risk=sum(1 for row in data if row.flags.at_risk),
            ),
        )
