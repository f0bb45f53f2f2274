"""Normalized billing records and inbound event schemas."""

from __future__ import annotations

from billing_engine.models.billing import (
    PRO_STATUSES,
    InvoiceStatus,
    NormalizedInvoice,
    NormalizedSubscription,
    PlanTier,
    RecordOrigin,
    SubscriptionStatus,
    derive_plan_tier,
    outstanding_balance,
)
from billing_engine.models.events import (
    EventCategory,
    IgnoredEvent,
    InvoiceEvent,
    ProviderEvent,
    SubscriptionEvent,
    parse_event,
)

__all__ = [
    "PRO_STATUSES",
    "EventCategory",
    "IgnoredEvent",
    "InvoiceEvent",
    "InvoiceStatus",
    "NormalizedInvoice",
    "NormalizedSubscription",
    "PlanTier",
    "ProviderEvent",
    "RecordOrigin",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "derive_plan_tier",
    "outstanding_balance",
    "parse_event",
]
