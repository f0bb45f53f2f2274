"""Idempotent reconciliation of provider state into the local mirror."""

from __future__ import annotations

from billing_engine.reconciliation.engine import ReconciliationEngine
from billing_engine.reconciliation.sweep import FullReconciliationSweep, SweepResult

__all__ = ["FullReconciliationSweep", "ReconciliationEngine", "SweepResult"]
