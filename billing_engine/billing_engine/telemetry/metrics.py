"""Prometheus counters for the reconciliation core.

Exposed through the API's ``/metrics`` endpoint; the CLI process registers
them too but nothing scrapes it.
"""

from __future__ import annotations

from prometheus_client import Counter

AUDIT_WRITE_FAILURES = Counter(
    "billsync_audit_write_failures_total",
    "Audit log writes that failed without aborting the primary operation",
    ["action"],
)

WEBHOOK_EVENTS = Counter(
    "billsync_webhook_events_total",
    "Inbound provider events by terminal outcome",
    ["outcome"],
)

RECORDS_UPSERTED = Counter(
    "billsync_records_upserted_total",
    "Subscription and invoice upserts by record kind and trigger",
    ["kind", "origin"],
)

RECORDS_SKIPPED = Counter(
    "billsync_records_skipped_total",
    "Provider records dropped during reconciliation by reason",
    ["reason"],
)

DUNNING_NOTIFICATIONS = Counter(
    "billsync_dunning_notifications_total",
    "Dunning notifications dispatched by classification and delivery mode",
    ["kind", "mocked"],
)
