"""Single-line JSON log formatter.

Enabled with ``API_STRUCTURED_LOGGING=true``.  Each record becomes one JSON
object so log shippers can index webhook and cron activity without parsing
free text.  Two optional context blocks are recognised, both passed through
``extra=``:

``request``
    Access-log payload from :class:`~api.middleware.logging.RequestLoggingMiddleware`.
    Its ``correlation_id`` is also lifted to the top level.
``billing``
    Provider event context from the ingestion gateway (event id and type,
    tenant, outcome).

Example line::

    {"ts": "2026-05-01T09:30:00.000000+00:00", "level": "INFO", "service": "billsync-api",
     "logger": "billing_engine.ingestion.gateway", "message": "Applied event evt_1 ...",
     "billing": {"event_id": "evt_1", "event_type": "invoice.paid", "org_id": "org_1", "outcome": "applied"}}
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

CONTEXT_BLOCKS: tuple[str, ...] = ("request", "billing")


class JSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line.

    Parameters
    ----------
    service:
        Value of the ``service`` key on every line.
    """

    def __init__(self, service: str = "billsync-api") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for block in CONTEXT_BLOCKS:
            value = getattr(record, block, None)
            if value is not None:
                line[block] = value

        request = line.get("request")
        if isinstance(request, dict) and request.get("correlation_id"):
            line["correlation_id"] = request["correlation_id"]

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            line["error"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": "".join(traceback.format_exception(exc_type, exc, tb)),
            }

        return json.dumps(line, default=str, ensure_ascii=False)
