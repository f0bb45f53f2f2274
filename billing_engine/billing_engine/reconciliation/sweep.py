"""Full reconciliation sweep.

Re-pulls every tenant's invoices and latest subscription from the provider
and pushes them through :class:`ReconciliationEngine`, correcting drift left
by missed or delayed webhooks.  The sweep only ever writes provider truth,
so it is safe to re-run at any time.

Each tenant is reconciled in its own session and committed on its own, so
progress made before a failure is kept.  A malformed provider record is
skipped; a provider or store failure aborts the sweep and propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import MappingError, UnresolvedTenantError
from billing_engine.mapper.state_mapper import map_invoice, map_subscription
from billing_engine.models.billing import RecordOrigin
from billing_engine.provider.base import BillingProvider
from billing_engine.reconciliation.engine import ReconciliationEngine
from billing_engine.state.repository import OrganizationRepository
from billing_engine.telemetry.metrics import RECORDS_SKIPPED

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counters for one sweep run."""

    tenants_scanned: int = 0
    invoices_upserted: int = 0
    subscriptions_synced: int = 0
    records_skipped: int = 0

    def merge(self, other: SweepResult) -> None:
        self.tenants_scanned += other.tenants_scanned
        self.invoices_upserted += other.invoices_upserted
        self.subscriptions_synced += other.subscriptions_synced
        self.records_skipped += other.records_skipped


class FullReconciliationSweep:
    """Paginate provider state for all tenants into the local mirror.

    Parameters
    ----------
    session_factory:
        Factory producing one session per tenant.
    provider:
        Provider client to read from.
    page_size:
        Invoices requested per page (the provider caps this at 100).
    max_pages:
        Upper bound on invoice pages fetched per tenant in one run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: BillingProvider,
        *,
        page_size: int = 100,
        max_pages: int = 20,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._page_size = page_size
        self._max_pages = max_pages

    async def reconcile_all(self) -> SweepResult:
        """Reconcile every organization that has a provider customer reference."""
        async with self._session_factory() as session:
            tenants = await OrganizationRepository(session).list_with_customer()

        total = SweepResult()
        for org_id, customer_id in tenants:
            total.merge(await self.reconcile_tenant(org_id, customer_id))

        logger.info(
            "Sweep complete: tenants=%d invoices=%d subscriptions=%d skipped=%d",
            total.tenants_scanned,
            total.invoices_upserted,
            total.subscriptions_synced,
            total.records_skipped,
        )
        return total

    async def reconcile_org(self, org_id: str) -> SweepResult:
        """Reconcile a single organization by id.

        Raises
        ------
        UnresolvedTenantError
            If the organization does not exist or has no customer reference.
        """
        async with self._session_factory() as session:
            org = await OrganizationRepository(session).get(org_id)
        if org is None or not org.stripe_customer_id:
            raise UnresolvedTenantError(None, org_id)
        return await self.reconcile_tenant(org.id, org.stripe_customer_id)

    async def reconcile_tenant(self, org_id: str, customer_id: str) -> SweepResult:
        """Reconcile one tenant's invoices and latest subscription in one transaction."""
        result = SweepResult(tenants_scanned=1)
        api_version = self._provider.api_version

        async with self._session_factory() as session:
            engine = ReconciliationEngine(session)
            try:
                cursor: str | None = None
                for _ in range(self._max_pages):
                    page = await self._provider.list_invoices(
                        customer_id,
                        limit=self._page_size,
                        starting_after=cursor,
                    )
                    for obj in page.data:
                        try:
                            invoice = map_invoice(obj, api_version)
                        except MappingError as exc:
                            result.records_skipped += 1
                            RECORDS_SKIPPED.labels(reason="mapping").inc()
                            logger.warning("Sweep skipping invoice for org %s: %s", org_id, exc)
                            continue
                        await engine.upsert_invoice(invoice, tenant_id=org_id, origin=RecordOrigin.SWEEP)
                        result.invoices_upserted += 1

                    if not page.has_more or not page.next_cursor:
                        break
                    cursor = page.next_cursor
                else:
                    logger.warning(
                        "Sweep stopped after %d invoice pages for org %s; remaining pages left for the next run",
                        self._max_pages,
                        org_id,
                    )

                latest = await self._provider.latest_subscription(customer_id)
                if latest is not None:
                    try:
                        subscription = map_subscription(latest, api_version)
                    except MappingError as exc:
                        result.records_skipped += 1
                        RECORDS_SKIPPED.labels(reason="mapping").inc()
                        logger.warning("Sweep skipping subscription for org %s: %s", org_id, exc)
                    else:
                        await engine.upsert_subscription(subscription, tenant_id=org_id, origin=RecordOrigin.SWEEP)
                        result.subscriptions_synced += 1

                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.debug(
            "Reconciled org %s: invoices=%d subscriptions=%d skipped=%d",
            org_id,
            result.invoices_upserted,
            result.subscriptions_synced,
            result.records_skipped,
        )
        return result
