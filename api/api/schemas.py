"""Shared Pydantic response models for API endpoints.

Responses are serialised with camelCase keys for the dashboard; models are
populated by their snake_case field names.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Webhooks and cron
# ---------------------------------------------------------------------------


class WebhookAck(_CamelModel):
    """Acknowledgement returned for every delivery that is not rejected."""

    received: bool = True
    outcome: str


class CronReconcileResponse(_CamelModel):
    ok: bool = True
    organizations: int
    invoices_upserted: int
    subscriptions_synced: int
    records_skipped: int = 0


class CronDunningResponse(_CamelModel):
    ok: bool = True
    scanned: int
    overdue: int
    upcoming: int
    sent: int
    deduplicated: int = 0
    failed: int = 0


class CronProbeResponse(_CamelModel):
    ok: bool = True
    endpoint: str


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class SubscriptionSummary(_CamelModel):
    stripe_subscription_id: str
    status: str
    price_id: str | None = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool


class SubscriptionStatusResponse(_CamelModel):
    """Plan tier and latest subscription of one organization."""

    ok: bool = True
    org_id: str
    plan: str
    customer_id: str | None = None
    subscription: SubscriptionSummary | None = None


class CheckoutSyncResponse(_CamelModel):
    ok: bool = True
    session: str
    org_id: str
    customer_id: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    plan: str | None = None


class ResumeResponse(_CamelModel):
    ok: bool = True
    note: str


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceFlags(_CamelModel):
    overdue: bool
    at_risk: bool


class InvoiceRow(_CamelModel):
    """One invoice with derived aging fields."""

    stripe_invoice_id: str
    currency: str
    amount_due: int
    amount_paid: int
    amount_due_formatted: str
    amount_paid_formatted: str
    outstanding: int
    status: str
    due_date: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    hosted_invoice_url: str | None = None
    created: datetime
    aging_days: int | None = None
    aging_bucket: str
    flags: InvoiceFlags


class InvoiceRollups(_CamelModel):
    """Counts over the rows of the current page."""

    buckets: dict[str, int]
    overdue: int
    at_risk: int


class InvoiceListResponse(_CamelModel):
    ok: bool = True
    page: int
    limit: int
    total: int
    pages: int
    data: list[InvoiceRow]
    rollups: InvoiceRollups


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class BucketRollupResponse(_CamelModel):
    count: int
    outstanding: int
    overdue: int


class AgingResponse(_CamelModel):
    ok: bool = True
    rollup: dict[str, BucketRollupResponse]


class DunningActivityResponse(_CamelModel):
    total: int
    upcoming: int
    overdue: int
    mocked: int


class DunningAnalyticsResponse(_CamelModel):
    ok: bool = True
    last30d: DunningActivityResponse = Field(alias="last30d")


class KpiValues(BaseModel):
    """Headline KPIs.  Money values are minor units."""

    model_config = ConfigDict(populate_by_name=True)

    mrr: int = Field(alias="MRR")
    arr: int = Field(alias="ARR")
    active_customers: int = Field(alias="activeCustomers")
    arpa: float = Field(alias="ARPA")
    collection_rate: float = Field(alias="collectionRate")
    dso: float = Field(alias="DSO")


class KpiSummaryResponse(_CamelModel):
    ok: bool = True
    currency: str
    kpis: KpiValues
