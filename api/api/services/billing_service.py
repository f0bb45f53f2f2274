"""Tenant-facing billing operations: checkout, manual checkout sync, resume.

Every provider snapshot fetched here is written through
:class:`~billing_engine.reconciliation.engine.ReconciliationEngine` with the
``manual`` origin, so the same upsert discipline applies as for webhooks and
the sweep.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from billing_engine.mapper import map_invoice, map_subscription
from billing_engine.models.billing import PlanTier, RecordOrigin
from billing_engine.provider import BillingProvider
from billing_engine.reconciliation.engine import ReconciliationEngine
from billing_engine.state.repository import OrganizationRepository, SubscriptionRepository
from billing_engine.state.tables import OrganizationTable, SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def _object_id(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id")
    return None


class BillingService:
    """Checkout and subscription operations for one organization.

    Parameters
    ----------
    session:
        Request session; the caller commits.
    provider:
        Provider client.
    settings:
        API settings (price id and public app URL).
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: BillingProvider,
        settings: APISettings,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._orgs = OrganizationRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._engine = ReconciliationEngine(session)

    async def get_organization(self, org_id: str) -> OrganizationTable | None:
        return await self._orgs.get(org_id)

    async def ensure_customer(self, org: OrganizationTable, *, email: str | None) -> str:
        """Return the organization's customer reference, creating it on first use.

        The provider customer is tagged with ``metadata.org_id``.  Attaching
        the reference is a conditional update, so if a concurrent request
        attached one first, that reference wins.
        """
        if org.stripe_customer_id:
            return org.stripe_customer_id

        customer = await self._provider.create_customer(org.id, name=org.name, email=email)
        customer_id = customer["id"]
        if await self._orgs.claim_customer(org.id, customer_id):
            logger.info("Attached customer %s to org %s", customer_id, org.id)
            return customer_id

        current = await self._orgs.get(org.id)
        logger.warning(
            "Org %s gained customer %s concurrently; discarding %s",
            org.id,
            current.stripe_customer_id if current else None,
            customer_id,
        )
        return current.stripe_customer_id if current and current.stripe_customer_id else customer_id

    async def create_checkout(self, org: OrganizationTable, *, email: str | None) -> str:
        """Create a subscription checkout for the Pro price and return its URL."""
        customer_id = await self.ensure_customer(org, email=email)
        base = self._settings.app_url.rstrip("/")
        checkout = await self._provider.create_checkout_session(
            customer_id=customer_id,
            price_id=self._settings.stripe_price_id_pro,
            org_id=org.id,
            success_url=f"{base}/billing/success?session_id={CHECKOUT_SESSION_PLACEHOLDER}&org_id={org.id}",
            cancel_url=f"{base}/pricing",
        )
        logger.info("Created checkout session %s for org %s", checkout.get("id"), org.id)
        return checkout["url"]

    async def sync_checkout(self, session_id: str, *, org_id: str) -> dict[str, Any]:
        """Pull a checkout session's subscription and latest invoice into the mirror.

        The tenant is resolved the same way webhooks resolve it, with the
        session's ``client_reference_id`` (or the caller's organization) as
        the metadata hint.

        Raises
        ------
        PermissionError
            If the checkout belongs to a different organization.
        UnresolvedTenantError
            If no organization can be attributed.
        MappingError
            If the provider returned a malformed object.
        """
        checkout = await self._provider.retrieve_checkout_session(session_id)
        customer_id = _object_id(checkout.get("customer"))
        hint = checkout.get("client_reference_id") or org_id
        tenant_id = await self._engine.resolve_tenant(customer_id, {"org_id": hint})
        if tenant_id != org_id:
            raise PermissionError("Checkout session belongs to another organization")

        api_version = self._provider.api_version
        result: dict[str, Any] = {
            "session": checkout.get("id") or session_id,
            "org_id": tenant_id,
            "customer_id": customer_id,
            "subscription_id": None,
            "invoice_id": None,
            "plan": None,
        }

        subscription = checkout.get("subscription")
        if isinstance(subscription, str):
            subscription = await self._provider.retrieve_subscription(subscription)
        if isinstance(subscription, Mapping):
            record = map_subscription(subscription, api_version)
            tier = await self._engine.upsert_subscription(record, tenant_id=tenant_id, origin=RecordOrigin.MANUAL)
            result["subscription_id"] = record.external_id
            result["plan"] = tier.value

        invoice = subscription.get("latest_invoice") if isinstance(subscription, Mapping) else None
        if isinstance(invoice, str):
            invoice = await self._provider.retrieve_invoice(invoice)
        elif invoice is None and customer_id:
            page = await self._provider.list_invoices(customer_id, limit=1)
            invoice = page.data[0] if page.data else None
        if isinstance(invoice, Mapping):
            inv_record = map_invoice(invoice, api_version)
            await self._engine.upsert_invoice(inv_record, tenant_id=tenant_id, origin=RecordOrigin.MANUAL)
            result["invoice_id"] = inv_record.external_id

        logger.info(
            "Synced checkout %s org=%s subscription=%s invoice=%s",
            result["session"],
            tenant_id,
            result["subscription_id"],
            result["invoice_id"],
        )
        return result

    async def resume(self, org_id: str) -> PlanTier | None:
        """Clear cancel-at-period-end on the latest subscription.

        The provider is updated first and the returned snapshot is upserted,
        so the mirror never claims a resume the provider did not accept.

        Returns
        -------
        PlanTier or None
            The re-derived plan tier, or ``None`` if the organization has no
            subscription.
        """
        latest = await self._subscriptions.latest_for_org(org_id)
        if latest is None:
            return None

        snapshot = await self._provider.update_subscription(latest.stripe_subscription_id, cancel_at_period_end=False)
        record = map_subscription(snapshot, self._provider.api_version)
        logger.info("Resumed subscription %s for org %s", record.external_id, org_id)
        return await self._engine.upsert_subscription(record, tenant_id=org_id, origin=RecordOrigin.MANUAL)

    async def latest_subscription(self, org_id: str) -> SubscriptionTable | None:
        return await self._subscriptions.latest_for_org(org_id)
