"""Normalized subscription and invoice records.

These are the only shapes the reconciliation engine accepts.  Provider
payloads are translated into them by :mod:`billing_engine.mapper`, so
nothing downstream depends on the provider SDK's object layout.

Status fields are plain upper-case strings rather than enum members:
values the provider introduces after this code was written are stored
as-is instead of failing validation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Known provider subscription statuses, upper-cased for storage."""

    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"
    PAUSED = "PAUSED"


class InvoiceStatus(str, Enum):
    """Known provider invoice statuses, upper-cased for storage."""

    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"
    VOID = "VOID"


class PlanTier(str, Enum):
    """Tenant plan tier, a cached projection of subscription status."""

    FREE = "FREE"
    PRO = "PRO"


class RecordOrigin(str, Enum):
    """Which trigger produced an upsert."""

    WEBHOOK = "webhook"
    SWEEP = "sweep"
    MANUAL = "manual"


# Subscription statuses that entitle a tenant to the PRO tier.
PRO_STATUSES: frozenset[str] = frozenset(
    {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.PAST_DUE.value,
    }
)


class NormalizedSubscription(BaseModel):
    """Provider-agnostic snapshot of one subscription."""

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(..., min_length=1, description="Provider subscription id.")
    customer_id: str | None = Field(default=None, description="Provider customer reference.")
    status: str = Field(
        default=SubscriptionStatus.INCOMPLETE.value,
        description="Upper-cased provider status; unknown values pass through.",
    )
    price_id: str | None = Field(default=None, description="Provider price reference.")
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("status")
    @classmethod
    def upper_status(cls, value: str) -> str:
        return value.strip().upper()


class NormalizedInvoice(BaseModel):
    """Provider-agnostic snapshot of one invoice.

    Amounts are integer minor currency units exactly as the provider
    reports them.  ``amount_paid > amount_due`` is accepted.
    """

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(..., min_length=1, description="Provider invoice id.")
    customer_id: str | None = Field(default=None, description="Provider customer reference.")
    currency: str = Field(default="USD", min_length=1)
    amount_due: int = 0
    amount_paid: int = 0
    status: str = Field(
        default=InvoiceStatus.DRAFT.value,
        description="Upper-cased provider status; unknown values pass through.",
    )
    due_date: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    hosted_invoice_url: str | None = None
    created: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("status", "currency")
    @classmethod
    def upper_codes(cls, value: str) -> str:
        return value.strip().upper()


def derive_plan_tier(status: str) -> PlanTier:
    """Return the plan tier implied by a subscription *status*."""
    return PlanTier.PRO if status.upper() in PRO_STATUSES else PlanTier.FREE


def outstanding_balance(amount_due: int, amount_paid: int) -> int:
    """Amount still owed in minor units, floored at zero."""
    return max(0, amount_due - amount_paid)
