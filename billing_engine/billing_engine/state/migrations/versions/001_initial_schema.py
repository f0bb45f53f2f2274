"""Initial billsync schema.

Creates tenants, users, memberships, the subscription and invoice mirror,
and the append-only audit log.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False) for name in names
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("plan", sa.String(16), nullable=False, server_default="FREE"),
        sa.Column("stripe_customer_id", sa.String(256), nullable=True, unique=True),
        *_timestamps("created_at", "updated_at"),
        sa.CheckConstraint("plan IN ('FREE','PRO')", name="ck_organizations_plan"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=True),
        *_timestamps("created_at"),
    )

    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="ACCOUNTANT"),
        *_timestamps("created_at"),
        sa.UniqueConstraint("user_id", "org_id", name="uq_memberships_user_org"),
        sa.CheckConstraint("role IN ('OWNER','ACCOUNTANT')", name="ck_memberships_role"),
    )
    op.create_index("ix_memberships_org_role", "memberships", ["org_id", "role"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stripe_subscription_id", sa.String(256), nullable=False, unique=True),
        sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("price_id", sa.String(256), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_subscriptions_org_updated", "subscriptions", ["org_id", "updated_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stripe_invoice_id", sa.String(256), nullable=False, unique=True),
        sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("amount_due", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hosted_invoice_url", sa.Text(), nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=False),
        *_timestamps("updated_at"),
    )
    op.create_index("ix_invoices_org_created", "invoices", ["org_id", "created"])
    op.create_index("ix_invoices_status_due", "invoices", ["status", "due_date"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(256), nullable=True),
        sa.Column("metadata_json", _JsonType, nullable=True),
        *_timestamps("created_at"),
    )
    op.create_index("ix_audit_org_created", "audit_log", ["org_id", "created_at"])
    op.create_index("ix_audit_action_entity", "audit_log", ["action", "entity_id"])
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_index("ix_audit_action_entity", table_name="audit_log")
    op.drop_index("ix_audit_org_created", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_invoices_status_due", table_name="invoices")
    op.drop_index("ix_invoices_org_created", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_subscriptions_org_updated", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_memberships_org_role", table_name="memberships")
    op.drop_table("memberships")
    op.drop_table("users")
    op.drop_table("organizations")
