"""Event ingestion gateway for provider webhooks.

One request moves through these states::

    received ─► signature-rejected                       (SignatureError → 400)
             └► signature-verified ─► ignored            (200, unrecognized type)
                                   └► mapping-skipped    (200, malformed payload)
                                   └► duplicate          (200, event id already applied)
                                   └► tenant-unresolved  (200, skip audited)
                                   └► applied            (200)

Only :class:`SignatureError` and :class:`StoreError` escape :meth:`ingest`;
every business-level no-op resolves to an :class:`IngestionResult` so the
HTTP layer can acknowledge it and the provider does not retry.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import MappingError, SignatureError, StoreError, UnresolvedTenantError
from billing_engine.mapper.state_mapper import map_invoice, map_subscription
from billing_engine.models.billing import NormalizedInvoice, NormalizedSubscription, RecordOrigin
from billing_engine.models.events import IgnoredEvent, InvoiceEvent, SubscriptionEvent, parse_event
from billing_engine.provider.base import BillingProvider
from billing_engine.reconciliation.engine import ReconciliationEngine
from billing_engine.state.repository import SKIPPED_EVENT_ENTITY, AuditRepository
from billing_engine.telemetry.metrics import RECORDS_SKIPPED, WEBHOOK_EVENTS

logger = logging.getLogger(__name__)


class IngestionOutcome(str, Enum):
    """Terminal state of one inbound event."""

    APPLIED = "applied"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    TENANT_UNRESOLVED = "tenant_unresolved"
    MAPPING_SKIPPED = "mapping_skipped"


@dataclass(frozen=True)
class IngestionResult:
    """What happened to an inbound event that was acknowledged."""

    outcome: IngestionOutcome
    event_id: str | None = None
    event_type: str | None = None
    tenant_id: str | None = None
    reason: str | None = None


def _log_context(
    event: InvoiceEvent | SubscriptionEvent | IgnoredEvent,
    outcome: IngestionOutcome,
    *,
    org_id: str | None = None,
) -> dict[str, dict[str, str | None]]:
    """``extra=`` block rendered as ``billing`` by the JSON log formatter."""
    return {
        "billing": {
            "event_id": event.id,
            "event_type": event.type,
            "org_id": org_id,
            "outcome": outcome.value,
        }
    }


class EventIngestionGateway:
    """Verify, classify, and dispatch provider webhook deliveries.

    Parameters
    ----------
    session:
        Session whose transaction receives the upsert and audit writes.  The
        caller commits.
    provider:
        Provider client used for signature verification and API version.
    webhook_secret:
        Endpoint signing secret.
    tolerance:
        Maximum accepted age of a signature timestamp, in seconds.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: BillingProvider,
        *,
        webhook_secret: str,
        tolerance: int = 300,
    ) -> None:
        self._session = session
        self._provider = provider
        self._secret = webhook_secret
        self._tolerance = tolerance
        self._engine = ReconciliationEngine(session)
        self._audit = AuditRepository(session)

    async def ingest(self, payload: bytes, signature_header: str | None) -> IngestionResult:
        """Process one raw webhook delivery.

        The signature is checked before the body is parsed at all.

        Raises
        ------
        SignatureError
            If the signature is missing or invalid.
        StoreError
            If the local store fails; the delivery should be retried.
        """
        try:
            self._provider.verify_signature(payload, signature_header, self._secret, self._tolerance)
        except SignatureError:
            WEBHOOK_EVENTS.labels(outcome="signature_rejected").inc()
            logger.warning("Rejected webhook with bad signature")
            raise

        try:
            raw = json.loads(payload)
            event = parse_event(raw)
        except (ValueError, MappingError) as exc:
            logger.warning("Skipping undecodable webhook body: %s", exc)
            return self._finish(IngestionResult(IngestionOutcome.MAPPING_SKIPPED, reason=str(exc)))

        if isinstance(event, IgnoredEvent):
            logger.info(
                "Ignoring webhook event %s type=%s",
                event.id,
                event.type,
                extra=_log_context(event, IngestionOutcome.IGNORED),
            )
            return self._finish(IngestionResult(IngestionOutcome.IGNORED, event.id, event.type))

        try:
            return self._finish(await self.dispatch(event))
        except SQLAlchemyError as exc:
            raise StoreError(f"State store failure while applying event {event.id}") from exc

    async def dispatch(self, event: InvoiceEvent | SubscriptionEvent) -> IngestionResult:
        """Apply a validated, recognised event through the reconciliation engine."""
        if await self._audit.has_provider_event(event.id):
            logger.info(
                "Duplicate delivery of event %s type=%s; already applied",
                event.id,
                event.type,
                extra=_log_context(event, IngestionOutcome.DUPLICATE),
            )
            return IngestionResult(IngestionOutcome.DUPLICATE, event.id, event.type)

        api_version = event.api_version or self._provider.api_version
        record: NormalizedInvoice | NormalizedSubscription
        try:
            if isinstance(event, InvoiceEvent):
                record = map_invoice(event.object, api_version)
            else:
                record = map_subscription(event.object, api_version, deleted=event.is_deletion)
        except MappingError as exc:
            RECORDS_SKIPPED.labels(reason="mapping").inc()
            logger.warning(
                "Skipping event %s type=%s: %s",
                event.id,
                event.type,
                exc,
                extra=_log_context(event, IngestionOutcome.MAPPING_SKIPPED),
            )
            return IngestionResult(IngestionOutcome.MAPPING_SKIPPED, event.id, event.type, reason=str(exc))

        try:
            tenant_id = await self._engine.resolve_tenant(record.customer_id, record.metadata)
        except UnresolvedTenantError as exc:
            RECORDS_SKIPPED.labels(reason="unknown_tenant").inc()
            logger.warning(
                "Skipping event %s type=%s: %s",
                event.id,
                event.type,
                exc,
                extra=_log_context(event, IngestionOutcome.TENANT_UNRESOLVED),
            )
            await self._engine.record_audit(
                action="webhook.skipped",
                org_id=None,
                entity_type=SKIPPED_EVENT_ENTITY,
                entity_id=event.id,
                metadata={
                    "type": event.type,
                    "object_id": record.external_id,
                    "customer": record.customer_id,
                    "reason": "unknown_tenant",
                },
            )
            return IngestionResult(IngestionOutcome.TENANT_UNRESOLVED, event.id, event.type, reason="unknown_tenant")

        if isinstance(record, NormalizedInvoice):
            await self._engine.upsert_invoice(
                record,
                tenant_id=tenant_id,
                origin=RecordOrigin.WEBHOOK,
                event_id=event.id,
                event_type=event.type,
            )
        else:
            await self._engine.upsert_subscription(
                record,
                tenant_id=tenant_id,
                origin=RecordOrigin.WEBHOOK,
                event_id=event.id,
                event_type=event.type,
            )

        logger.info(
            "Applied event %s type=%s org=%s",
            event.id,
            event.type,
            tenant_id,
            extra=_log_context(event, IngestionOutcome.APPLIED, org_id=tenant_id),
        )
        return IngestionResult(IngestionOutcome.APPLIED, event.id, event.type, tenant_id=tenant_id)

    @staticmethod
    def _finish(result: IngestionResult) -> IngestionResult:
        WEBHOOK_EVENTS.labels(outcome=result.outcome.value).inc()
        return result
