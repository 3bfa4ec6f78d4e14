"""Initial service-desk schema.

Creates the directory (tenants, users), ticket workflow (tickets,
status_history, quote_requests, ratings), contractor ledger (invoices,
payment_batches), subscription billing (subscriptions, payments,
webhook_receipts) and notification_outbox tables.

Tenant-scoped tables get a row-level security policy on PostgreSQL keyed
on ``app.tenant_id``.  RLS is enabled but not forced: platform-wide jobs
(the daily subscription check, gateway notifications) run as the table
owner.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_Json = JSONB().with_variant(sa.JSON(), "sqlite")

_RLS_TABLES: list[str] = [
    "users",
    "tickets",
    "status_history",
    "quote_requests",
    "ratings",
    "payment_batches",
    "invoices",
    "subscriptions",
    "payments",
    "notification_outbox",
]


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def _money(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        _ts("created_at", nullable=False),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("role", sa.String(32), nullable=False),
        sa.Column("department", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )
    op.create_index("ix_users_tenant_role", "users", ["tenant_id", "role"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("ticket_number", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="OPEN"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="MEDIUM"),
        sa.Column("department", sa.String(32), nullable=False, server_default="GENERAL"),
        sa.Column("location", sa.String(512), nullable=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("assigned_to_id", sa.String(64), sa.ForeignKey("users.id"), nullable=True),
        _ts("hq_assigned_at"),
        sa.Column("quote_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("quote_requested_at"),
        _money("quote_amount"),
        sa.Column("quote_description", sa.Text(), nullable=True),
        sa.Column("quote_file_url", sa.String(2048), nullable=True),
        _ts("quote_submitted_at"),
        sa.Column("quote_approved", sa.Boolean(), nullable=True),
        sa.Column("quote_rejection_reason", sa.Text(), nullable=True),
        _ts("scheduled_arrival"),
        sa.Column("estimated_hours", sa.Numeric(8, 2), nullable=True),
        sa.Column("technician_name", sa.String(256), nullable=True),
        sa.Column("job_plan", _Json, nullable=True),
        _ts("accepted_at"),
        _ts("arrived_at"),
        sa.Column("work_description", sa.Text(), nullable=True),
        _ts("work_description_requested_at"),
        _ts("work_description_submitted_at"),
        _ts("work_description_approved_at"),
        sa.Column("work_description_rejection_reason", sa.Text(), nullable=True),
        _ts("completed_at"),
        _ts("closed_at"),
        _ts("cancelled_at"),
        sa.Column("cancelled_by_id", sa.String(64), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        _ts("response_due_at"),
        _ts("resolution_due_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('OPEN','PROCESSING','AWAITING_QUOTE','QUOTE_SUBMITTED','ACCEPTED','ON_SITE',"
            "'IN_PROGRESS','AWAITING_DESCRIPTION','AWAITING_WORK_APPROVAL','COMPLETED','CLOSED','CANCELLED')",
            name="ck_tickets_status",
        ),
        sa.CheckConstraint("priority IN ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_tickets_priority"),
        sa.UniqueConstraint("tenant_id", "ticket_number", name="uq_tickets_tenant_number"),
    )
    op.create_index("ix_tickets_tenant_status", "tickets", ["tenant_id", "status"])
    op.create_index("ix_tickets_tenant_assignee", "tickets", ["tenant_id", "assigned_to_id"])
    op.create_index("ix_tickets_tenant_user", "tickets", ["tenant_id", "user_id"])

    op.create_table(
        "status_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=False),
        sa.Column("to_status", sa.String(32), nullable=False),
        sa.Column("changed_by_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_status_history_ticket", "status_history", ["tenant_id", "ticket_id", "created_at"])

    op.create_table(
        "quote_requests",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("contractor_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _money("amount"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("file_url", sa.String(2048), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("requested_by_id", sa.String(64), nullable=True),
        _ts("submitted_at"),
        _ts("responded_at"),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("ticket_id", "contractor_id", name="uq_quote_requests_ticket_contractor"),
        sa.CheckConstraint(
            "status IN ('pending','submitted','awarded','rejected')",
            name="ck_quote_requests_status",
        ),
    )
    op.create_index("ix_quote_requests_tenant_ticket", "quote_requests", ["tenant_id", "ticket_id"])

    op.create_table(
        "ratings",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("contractor_id", sa.String(64), nullable=True),
        sa.Column("punctuality", sa.Integer(), nullable=False),
        sa.Column("customer_service", sa.Integer(), nullable=False),
        sa.Column("workmanship", sa.Integer(), nullable=False),
        sa.Column("overall", sa.Integer(), nullable=False),
        sa.Column("ppe_compliant", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("followed_site_procedures", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("comment", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("ticket_id", "user_id", name="uq_ratings_ticket_user"),
    )

    op.create_table(
        "payment_batches",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("batch_number", sa.String(16), nullable=False, unique=True),
        _money("total_amount", nullable=False),
        sa.Column("invoice_count", sa.Integer(), nullable=False),
        sa.Column("pop_file_url", sa.String(2048), nullable=False),
        sa.Column("pop_reference", sa.String(256), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("processed_by_id", sa.String(64), nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_payment_batches_tenant_created", "payment_batches", ["tenant_id", "created_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("ticket_id", sa.String(64), sa.ForeignKey("tickets.id"), nullable=False),
        sa.Column("contractor_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        _money("amount", nullable=False),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        _money("balance", nullable=False),
        _money("quoted_amount"),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("revision_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("previous_invoice_id", sa.String(64), sa.ForeignKey("invoices.id"), nullable=True),
        sa.Column("invoice_file_url", sa.String(2048), nullable=True),
        sa.Column("work_description", sa.Text(), nullable=True),
        sa.Column("hours_worked", sa.Numeric(8, 2), nullable=True),
        _money("hourly_rate"),
        sa.Column("variation_description", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("clarification_request", sa.Text(), nullable=True),
        _ts("clarification_requested_at"),
        sa.Column("clarification_response", sa.Text(), nullable=True),
        _ts("clarification_responded_at"),
        sa.Column("payment_batch_id", sa.String(64), sa.ForeignKey("payment_batches.id"), nullable=True),
        sa.Column("proof_of_payment_url", sa.String(2048), nullable=True),
        _ts("paid_date"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING','APPROVED','REJECTED','PAID','CANCELLED','PROCESSING')",
            name="ck_invoices_status",
        ),
    )
    op.create_index(
        "uq_invoices_active_ticket",
        "invoices",
        ["ticket_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )
    op.create_index("ix_invoices_tenant_status", "invoices", ["tenant_id", "status"])
    op.create_index("ix_invoices_tenant_contractor", "invoices", ["tenant_id", "contractor_id"])
    op.create_index("ix_invoices_batch", "invoices", ["payment_batch_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False, unique=True),
        sa.Column("plan", sa.String(16), nullable=False, server_default="BASIC"),
        sa.Column("billing_cycle", sa.String(16), nullable=False, server_default="monthly"),
        sa.Column("status", sa.String(16), nullable=False, server_default="TRIAL"),
        _ts("current_period_start"),
        _ts("current_period_end"),
        _ts("grace_period_end"),
        _ts("trial_ends_at"),
        sa.Column("suspended_reason", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('TRIAL','ACTIVE','GRACE','READ_ONLY','SUSPENDED','CANCELLED')",
            name="ck_subscriptions_status",
        ),
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("subscription_id", sa.String(64), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("invoice_number", sa.String(64), nullable=True),
        _money("amount", nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("provider", sa.String(32), nullable=False, server_default="paynow"),
        sa.Column("provider_payment_id", sa.String(128), nullable=False, unique=True),
        sa.Column("poll_url", sa.String(2048), nullable=True),
        sa.Column("plan", sa.String(16), nullable=True),
        sa.Column("billing_cycle", sa.String(16), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("provider_response", _Json, nullable=True),
        _ts("due_date"),
        _ts("paid_at"),
        sa.Column("confirmed_by_id", sa.String(64), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint("status IN ('pending','success','failed')", name="ck_payments_status"),
    )
    op.create_index("ix_payments_tenant_created", "payments", ["tenant_id", "created_at"])
    op.create_index("ix_payments_status_due", "payments", ["status", "due_date"])

    op.create_table(
        "webhook_receipts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("dedupe_key", sa.String(64), nullable=False, unique=True),
        sa.Column("payment_id", sa.String(64), nullable=True),
        _ts("received_at", nullable=False),
    )

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", _Json, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("read_at"),
        _ts("delivered_at"),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("status IN ('pending','delivered','failed')", name="ck_notification_outbox_status"),
    )
    op.create_index("ix_notification_outbox_recipient", "notification_outbox", ["tenant_id", "recipient_id", "created_at"])
    op.create_index("ix_notification_outbox_status", "notification_outbox", ["status", "created_at"])

    if op.get_bind().dialect.name == "postgresql":
        for table in _RLS_TABLES:
            op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            op.execute(
                f"CREATE POLICY tenant_isolation_{table} ON {table} "
                f"USING (tenant_id = current_setting('app.tenant_id', true)) "
                f"WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
            )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in reversed(_RLS_TABLES):
            op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
            op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    for table in (
        "notification_outbox",
        "webhook_receipts",
        "payments",
        "subscriptions",
        "invoices",
        "payment_batches",
        "ratings",
        "quote_requests",
        "status_history",
        "tickets",
        "users",
        "tenants",
    ):
        op.drop_table(table)
