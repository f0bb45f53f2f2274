"""Repository classes providing access to the billsync state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes call ``session.flush()``;
the caller is responsible for committing.

Subscription and invoice rows are written exclusively through
:func:`_dialect_upsert`, a single ``INSERT ... ON CONFLICT DO UPDATE``
statement, so concurrent writers for the same provider id serialize in the
database rather than in application code.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import (
    AuditLogTable,
    InvoiceTable,
    MembershipTable,
    OrganizationTable,
    SubscriptionTable,
    UserTable,
)

logger = logging.getLogger(__name__)

# Hard cap on invoice list page size.
_MAX_INVOICE_PAGE_SIZE = 50

# audit_log.entity_type values with engine-level meaning.
PROVIDER_EVENT_ENTITY = "provider_event"
SKIPPED_EVENT_ENTITY = "provider_event_skipped"
DUNNING_SENT_ACTION = "dunning.sent"


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to overwrite when a conflict occurs.  Columns left out
        keep their stored value.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Organizations, users, memberships
# ---------------------------------------------------------------------------


class OrganizationRepository:
    """Tenant lookups and the two tenant mutations the core performs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, org_id: str, name: str, *, stripe_customer_id: str | None = None) -> OrganizationTable:
        """Insert a new organization on the FREE plan."""
        row = OrganizationTable(id=org_id, name=name, plan="FREE", stripe_customer_id=stripe_customer_id)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, org_id: str) -> OrganizationTable | None:
        stmt = (
            select(OrganizationTable)
            .where(OrganizationTable.id == org_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_customer(self, customer_id: str) -> OrganizationTable | None:
        """Fetch the organization owning a provider customer reference."""
        stmt = (
            select(OrganizationTable)
            .where(OrganizationTable.stripe_customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_with_customer(self) -> list[tuple[str, str]]:
        """Return ``(org_id, customer_id)`` for every tenant with a customer reference."""
        stmt = (
            select(OrganizationTable.id, OrganizationTable.stripe_customer_id)
            .where(OrganizationTable.stripe_customer_id.is_not(None))
            .order_by(OrganizationTable.id)
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def claim_customer(self, org_id: str, customer_id: str) -> bool:
        """Bind *customer_id* to the organization if it has none yet.

        A single conditional ``UPDATE ... WHERE stripe_customer_id IS NULL``
        so two concurrent first checkouts cannot both attach a customer.

        Returns
        -------
        bool
            ``True`` if this call attached the reference.
        """
        stmt = (
            update(OrganizationTable)
            .where(
                OrganizationTable.id == org_id,
                OrganizationTable.stripe_customer_id.is_(None),
            )
            .values(stripe_customer_id=customer_id, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)

    async def set_plan(self, org_id: str, plan: str) -> None:
        stmt = (
            update(OrganizationTable)
            .where(OrganizationTable.id == org_id)
            .values(plan=plan, updated_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()


class UserRepository:
    """Users and their organization memberships."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, email: str, name: str | None = None, *, user_id: str | None = None) -> UserTable:
        row = UserTable(id=user_id or uuid.uuid4().hex, email=email.strip().lower(), name=name)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> UserTable | None:
        stmt = select(UserTable).where(UserTable.email == email.strip().lower())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_membership(self, user_id: str, org_id: str, role: str) -> MembershipTable:
        row = MembershipTable(user_id=user_id, org_id=org_id, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def memberships(self, user_id: str) -> dict[str, str]:
        """Return ``{org_id: role}`` for every organization the user belongs to."""
        stmt = select(MembershipTable.org_id, MembershipTable.role).where(MembershipTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return {row[0]: row[1] for row in result.all()}

    async def emails_with_role(self, org_id: str, role: str) -> list[str]:
        """Return the e-mail addresses of members holding *role* in *org_id*."""
        stmt = (
            select(UserTable.email)
            .join(MembershipTable, MembershipTable.user_id == UserTable.id)
            .where(MembershipTable.org_id == org_id, MembershipTable.role == role)
            .order_by(UserTable.email)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Provider mirror
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Reads and the single upsert write path for ``subscriptions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, values: dict[str, Any], update_columns: list[str]) -> None:
        await _dialect_upsert(
            self._session,
            SubscriptionTable,
            values,
            index_elements=["stripe_subscription_id"],
            update_columns=update_columns,
        )
        await self._session.flush()

    async def get(self, stripe_subscription_id: str) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.stripe_subscription_id == stripe_subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_org(self, org_id: str) -> SubscriptionTable | None:
        """Most recently written subscription for *org_id*."""
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.org_id == org_id)
            .order_by(SubscriptionTable.updated_at.desc(), SubscriptionTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_org(self, org_id: str, statuses: Sequence[str]) -> int:
        """Number of the organization's subscriptions in one of *statuses*."""
        stmt = (
            select(func.count())
            .select_from(SubscriptionTable)
            .where(
                SubscriptionTable.org_id == org_id,
                SubscriptionTable.status.in_(list(statuses)),
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


class InvoiceRepository:
    """Reads and the single upsert write path for ``invoices``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, values: dict[str, Any], update_columns: list[str]) -> None:
        await _dialect_upsert(
            self._session,
            InvoiceTable,
            values,
            index_elements=["stripe_invoice_id"],
            update_columns=update_columns,
        )
        await self._session.flush()

    async def get(self, stripe_invoice_id: str) -> InvoiceTable | None:
        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.stripe_invoice_id == stripe_invoice_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_org(
        self,
        org_id: str,
        *,
        status: str | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[InvoiceTable], int]:
        """Return one page of an organization's invoices and the total match count.

        Ordered by due date (latest first, undated last), then creation time.

        Parameters
        ----------
        status:
            Exact (case-insensitive) status filter; ``ALL`` disables it.
        search:
            Case-insensitive substring match on the provider invoice id or currency.
        limit:
            Page size, capped at ``_MAX_INVOICE_PAGE_SIZE``.
        offset:
            Rows to skip.
        """
        limit = max(1, min(limit, _MAX_INVOICE_PAGE_SIZE))
        offset = max(offset, 0)

        conditions: list[Any] = [InvoiceTable.org_id == org_id]
        if status and status.upper() != "ALL":
            conditions.append(InvoiceTable.status == status.upper())
        if search:
            pattern = f"%{_escape_like(search)}%"
            conditions.append(
                or_(
                    InvoiceTable.stripe_invoice_id.ilike(pattern, escape="\\"),
                    InvoiceTable.currency.ilike(pattern, escape="\\"),
                )
            )

        total = await self._session.execute(select(func.count()).select_from(InvoiceTable).where(*conditions))
        stmt = (
            select(InvoiceTable)
            .where(*conditions)
            .order_by(InvoiceTable.due_date.desc().nulls_last(), InvoiceTable.created.desc(), InvoiceTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), int(total.scalar_one())

    async def list_all_for_org(self, org_id: str) -> list[InvoiceTable]:
        stmt = select(InvoiceTable).where(InvoiceTable.org_id == org_id).order_by(InvoiceTable.created.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_all(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(InvoiceTable))
        return int(result.scalar_one())

    async def list_unpaid_due_before(self, cutoff: datetime) -> list[InvoiceTable]:
        """Invoices with a due date on or before *cutoff* that may still need chasing.

        Paid, void, and fully-settled rows are filtered out here; the dunning
        classifier makes the final decision.
        """
        stmt = (
            select(InvoiceTable)
            .where(
                InvoiceTable.due_date.is_not(None),
                InvoiceTable.due_date <= cutoff,
                InvoiceTable.status.not_in(["PAID", "VOID"]),
                InvoiceTable.amount_paid < InvoiceTable.amount_due,
            )
            .order_by(InvoiceTable.due_date, InvoiceTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_period_end_since(self, org_id: str, since: datetime, *, status: str | None = None) -> list[InvoiceTable]:
        """Invoices of *org_id* whose billing period ended at or after *since*."""
        stmt = select(InvoiceTable).where(
            InvoiceTable.org_id == org_id,
            InvoiceTable.period_end.is_not(None),
            InvoiceTable.period_end >= since,
        )
        if status is not None:
            stmt = stmt.where(InvoiceTable.status == status)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, org_id: str, statuses: Sequence[str]) -> list[InvoiceTable]:
        stmt = select(InvoiceTable).where(
            InvoiceTable.org_id == org_id,
            InvoiceTable.status.in_(list(statuses)),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only access to ``audit_log``.

    ``org_id`` is ``None`` for system-level entries such as webhook skips.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def log(
        self,
        *,
        action: str,
        org_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Write an audit entry.  Returns the entry ID."""
        entry_id = uuid.uuid4().hex
        row = AuditLogTable(
            id=entry_id,
            org_id=org_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=metadata,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: org=%s action=%s entity=%s/%s",
            org_id or "-",
            action,
            entity_type or "-",
            entity_id or "-",
        )
        return entry_id

    async def query(
        self,
        *,
        org_id: str | None = None,
        action: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Query audit entries, most recent first.  Omitted filters are not applied."""
        stmt = select(AuditLogTable)
        if org_id is not None:
            stmt = stmt.where(AuditLogTable.org_id == org_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if entity_type is not None:
            stmt = stmt.where(AuditLogTable.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLogTable.entity_id == entity_id)
        if since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= since)

        stmt = stmt.order_by(AuditLogTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def has_provider_event(self, event_id: str) -> bool:
        """Whether an applied provider event with this id is already on record."""
        stmt = (
            select(AuditLogTable.id)
            .where(
                AuditLogTable.entity_type == PROVIDER_EVENT_ENTITY,
                AuditLogTable.entity_id == event_id,
                AuditLogTable.org_id.is_not(None),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def dunning_sent_keys(self, invoice_ids: Sequence[str], since: datetime) -> set[tuple[str, str, str]]:
        """Return ``(invoice_id, kind, recipient)`` triples already sent since *since*."""
        if not invoice_ids:
            return set()
        stmt = select(AuditLogTable.entity_id, AuditLogTable.metadata_json).where(
            AuditLogTable.action == DUNNING_SENT_ACTION,
            AuditLogTable.entity_id.in_(list(invoice_ids)),
            AuditLogTable.created_at >= since,
        )
        result = await self._session.execute(stmt)
        keys: set[tuple[str, str, str]] = set()
        for entity_id, meta in result.all():
            meta = meta or {}
            keys.add((entity_id, str(meta.get("kind", "")), str(meta.get("to", ""))))
        return keys

    async def list_dunning_since(self, since: datetime, *, org_ids: Sequence[str] | None = None) -> list[AuditLogTable]:
        stmt = select(AuditLogTable).where(
            AuditLogTable.action == DUNNING_SENT_ACTION,
            AuditLogTable.created_at >= since,
        )
        if org_ids is not None:
            stmt = stmt.where(AuditLogTable.org_id.in_(list(org_ids)))
        result = await self._session.execute(stmt.order_by(AuditLogTable.created_at.desc()))
        return list(result.scalars().all())
