"""Reconciliation engine: the single write path for the provider mirror.

Every trigger (webhook, sweep, manual sync) funnels normalized records
through :class:`ReconciliationEngine`.  Each upsert is one
``INSERT ... ON CONFLICT DO UPDATE`` keyed on the provider id, so repeated
application of the same snapshot converges to the same row, and concurrent
writers for one id are serialized by the database.  No recency check is
made: whichever snapshot is applied last wins.

The tenant's plan tier is rewritten in the same transaction as the
subscription row.  The engine never commits; the caller owns the
transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import StoreError, UnresolvedTenantError
from billing_engine.models.billing import (
    NormalizedInvoice,
    NormalizedSubscription,
    PlanTier,
    RecordOrigin,
    derive_plan_tier,
)
from billing_engine.state.repository import (
    PROVIDER_EVENT_ENTITY,
    AuditRepository,
    InvoiceRepository,
    OrganizationRepository,
    SubscriptionRepository,
)
from billing_engine.telemetry.metrics import AUDIT_WRITE_FAILURES, RECORDS_UPSERTED

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconciliationEngine:
    """Apply normalized provider snapshots to the local store.

    Parameters
    ----------
    session:
        The caller's session.  All writes share its transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._orgs = OrganizationRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._invoices = InvoiceRepository(session)
        self._audit = AuditRepository(session)

    # ------------------------------------------------------------------
    # Tenant resolution
    # ------------------------------------------------------------------

    async def resolve_tenant(
        self,
        customer_id: str | None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """Return the organization id that owns a provider record.

        The customer reference is authoritative.  The ``org_id`` metadata
        tag written at checkout is consulted only when no organization holds
        the reference, and only if the tagged organization exists and is not
        bound to a different customer.  A tenant found that way with no
        reference yet gets *customer_id* attached.

        Raises
        ------
        UnresolvedTenantError
            If neither route identifies an organization.
        """
        if customer_id:
            org = await self._orgs.get_by_customer(customer_id)
            if org is not None:
                return org.id

        hint = (metadata or {}).get("org_id")
        if hint:
            org = await self._orgs.get(hint)
            if org is not None and org.stripe_customer_id in (None, customer_id):
                if org.stripe_customer_id is None and customer_id:
                    await self._orgs.claim_customer(org.id, customer_id)
                return org.id

        raise UnresolvedTenantError(customer_id, hint)

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    async def upsert_subscription(
        self,
        record: NormalizedSubscription,
        *,
        tenant_id: str,
        origin: RecordOrigin = RecordOrigin.SWEEP,
        event_id: str | None = None,
        event_type: str | None = None,
    ) -> PlanTier:
        """Create or update the subscription row and re-derive the tenant plan.

        Missing period bounds fall back to the current time on the create
        path only; on the update path the stored bounds are kept.

        Returns
        -------
        PlanTier
            The plan tier written to the tenant.

        Raises
        ------
        StoreError
            If the database rejects the write.
        """
        now = _utcnow()
        values: dict[str, Any] = {
            "stripe_subscription_id": record.external_id,
            "org_id": tenant_id,
            "status": record.status,
            "price_id": record.price_id,
            "cancel_at_period_end": record.cancel_at_period_end,
            "updated_at": now,
        }
        update_columns = ["org_id", "status", "price_id", "cancel_at_period_end", "updated_at"]

        for column in ("current_period_start", "current_period_end"):
            value = getattr(record, column)
            if value is None:
                logger.warning(
                    "Subscription %s has no %s; a new row will use the current time",
                    record.external_id,
                    column,
                )
                values[column] = now
            else:
                values[column] = value
                update_columns.append(column)

        tier = derive_plan_tier(record.status)
        try:
            await self._subscriptions.upsert(values, update_columns)
            await self._orgs.set_plan(tenant_id, tier.value)
        except SQLAlchemyError as exc:
            raise StoreError(f"Subscription upsert failed for {record.external_id}") from exc

        RECORDS_UPSERTED.labels(kind="subscription", origin=origin.value).inc()
        logger.debug(
            "Upserted subscription %s org=%s status=%s plan=%s origin=%s",
            record.external_id,
            tenant_id,
            record.status,
            tier.value,
            origin.value,
        )

        if origin is not RecordOrigin.SWEEP:
            await self.record_audit(
                action=event_type or "subscription.synced",
                org_id=tenant_id,
                entity_type=PROVIDER_EVENT_ENTITY if event_id else "subscription",
                entity_id=event_id or record.external_id,
                metadata={
                    "id": event_id,
                    "object_id": record.external_id,
                    "status": record.status,
                    "origin": origin.value,
                },
            )
        return tier

    async def upsert_invoice(
        self,
        record: NormalizedInvoice,
        *,
        tenant_id: str,
        origin: RecordOrigin = RecordOrigin.SWEEP,
        event_id: str | None = None,
        event_type: str | None = None,
    ) -> None:
        """Create or update the invoice row.

        Nullable fields are written as given, so a snapshot that clears a
        due date clears it locally too.  ``created`` is non-nullable and
        falls back to the current time on the create path only.

        Raises
        ------
        StoreError
            If the database rejects the write.
        """
        now = _utcnow()
        values: dict[str, Any] = {
            "stripe_invoice_id": record.external_id,
            "org_id": tenant_id,
            "currency": record.currency,
            "amount_due": record.amount_due,
            "amount_paid": record.amount_paid,
            "status": record.status,
            "due_date": record.due_date,
            "period_start": record.period_start,
            "period_end": record.period_end,
            "hosted_invoice_url": record.hosted_invoice_url,
            "updated_at": now,
        }
        update_columns = [col for col in values if col != "stripe_invoice_id"]

        if record.created is None:
            logger.warning(
                "Invoice %s has no created timestamp; a new row will use the current time",
                record.external_id,
            )
            values["created"] = now
        else:
            values["created"] = record.created
            update_columns.append("created")

        try:
            await self._invoices.upsert(values, update_columns)
        except SQLAlchemyError as exc:
            raise StoreError(f"Invoice upsert failed for {record.external_id}") from exc

        RECORDS_UPSERTED.labels(kind="invoice", origin=origin.value).inc()
        logger.debug(
            "Upserted invoice %s org=%s status=%s origin=%s",
            record.external_id,
            tenant_id,
            record.status,
            origin.value,
        )

        if origin is not RecordOrigin.SWEEP:
            await self.record_audit(
                action=event_type or "invoice.synced",
                org_id=tenant_id,
                entity_type=PROVIDER_EVENT_ENTITY if event_id else "invoice",
                entity_id=event_id or record.external_id,
                metadata={
                    "id": event_id,
                    "object_id": record.external_id,
                    "status": record.status,
                    "origin": origin.value,
                },
            )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def record_audit(
        self,
        *,
        action: str,
        org_id: str | None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Append an audit entry inside a savepoint.

        A failed audit write is rolled back to the savepoint, logged, and
        counted in ``billsync_audit_write_failures_total``; the enclosing
        transaction and the primary write survive.

        Returns
        -------
        bool
            ``True`` if the entry was written.
        """
        try:
            async with self._session.begin_nested():
                await self._audit.log(
                    action=action,
                    org_id=org_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    metadata=metadata,
                )
        except SQLAlchemyError:
            AUDIT_WRITE_FAILURES.labels(action=action).inc()
            logger.error("Audit write failed action=%s entity=%s", action, entity_id, exc_info=True)
            return False
        return True
