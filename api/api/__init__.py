"""billsync HTTP API: webhook ingestion, cron triggers, and dashboard endpoints."""

__version__ = "0.1.0"
