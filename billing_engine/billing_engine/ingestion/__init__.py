"""Inbound provider event handling."""

from __future__ import annotations

from billing_engine.ingestion.gateway import EventIngestionGateway, IngestionOutcome, IngestionResult

__all__ = ["EventIngestionGateway", "IngestionOutcome", "IngestionResult"]
