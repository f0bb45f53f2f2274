"""Plan-tier entitlement gating.

Two plan tiers control dashboard features:

* **FREE** -- invoice list, checkout, and subscription status.
* **PRO** -- adds aging, dunning, and KPI analytics.

The tier itself is the cached projection written by the reconciliation
engine; this module only answers what a tier unlocks.
"""

from __future__ import annotations

from enum import Enum

from billing_engine.models.billing import PlanTier


class Feature(str, Enum):
    """Dashboard features that can be gated by plan tier."""

    # Free features
    INVOICE_LIST = "invoice_list"
    CHECKOUT = "checkout"
    SUBSCRIPTION_STATUS = "subscription_status"

    # Pro features
    AGING_ANALYTICS = "aging_analytics"
    DUNNING_ANALYTICS = "dunning_analytics"
    KPI_SUMMARY = "kpi_summary"


_FREE_FEATURES: frozenset[Feature] = frozenset(
    {
        Feature.INVOICE_LIST,
        Feature.CHECKOUT,
        Feature.SUBSCRIPTION_STATUS,
    }
)

_PRO_FEATURES: frozenset[Feature] = _FREE_FEATURES | frozenset(
    {
        Feature.AGING_ANALYTICS,
        Feature.DUNNING_ANALYTICS,
        Feature.KPI_SUMMARY,
    }
)

TIER_FEATURES: dict[PlanTier, frozenset[Feature]] = {
    PlanTier.FREE: _FREE_FEATURES,
    PlanTier.PRO: _PRO_FEATURES,
}


def _coerce_tier(tier: PlanTier | str) -> PlanTier:
    try:
        return PlanTier(str(getattr(tier, "value", tier)).upper())
    except ValueError:
        return PlanTier.FREE


def is_feature_enabled(tier: PlanTier | str, feature: Feature) -> bool:
    """Check whether a feature is enabled for the given plan tier.

    Unknown tier values are treated as FREE.
    """
    return feature in TIER_FEATURES[_coerce_tier(tier)]


def get_required_tier(feature: Feature) -> PlanTier:
    """Return the lowest tier that unlocks *feature*."""
    for tier in (PlanTier.FREE, PlanTier.PRO):
        if feature in TIER_FEATURES[tier]:
            return tier
    return PlanTier.PRO
