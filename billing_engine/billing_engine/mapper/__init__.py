"""Translation of provider-native objects into normalized billing records."""

from __future__ import annotations

from billing_engine.mapper.state_mapper import (
    ITEM_PERIOD_API_VERSION,
    ItemPeriodShapeAdapter,
    LegacyShapeAdapter,
    adapter_for,
    map_invoice,
    map_subscription,
)

__all__ = [
    "ITEM_PERIOD_API_VERSION",
    "ItemPeriodShapeAdapter",
    "LegacyShapeAdapter",
    "adapter_for",
    "map_invoice",
    "map_subscription",
]
