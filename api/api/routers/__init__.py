"""API router modules for the billsync control plane."""

from __future__ import annotations

from api.routers import analytics, billing, cron, health, invoices, metrics, webhooks

__all__ = [
    "analytics",
    "billing",
    "cron",
    "health",
    "invoices",
    "metrics",
    "webhooks",
]
