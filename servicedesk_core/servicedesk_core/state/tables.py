"""SQLAlchemy 2.0 ORM table definitions for the service-desk state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Money columns: two decimal places, large enough for batch totals.
_Money = Numeric(12, 2)


class _UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that stays aware on SQLite.

    SQLite returns naive values; they are stored in UTC, so the UTC tzinfo
    is reattached on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all service-desk tables."""


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """An organisation using the platform."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)


class UserTable(Base):
    """A person acting inside one tenant."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    department: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        Index("ix_users_tenant_role", "tenant_id", "role"),
    )


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class TicketTable(Base):
    """A service request raised by a requester.

    ``status`` is the single source of truth for the lifecycle position;
    the phase timestamps are denormalised conveniences.  Rows are never
    deleted; cancelled tickets stay as audit records.
    """

    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    ticket_number: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="OPEN")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM")
    department: Mapped[str] = mapped_column(String(32), nullable=False, default="GENERAL")
    location: Mapped[str | None] = mapped_column(String(512), nullable=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    assigned_to_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("users.id"), nullable=True)
    hq_assigned_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)

    # Quote sub-flow.
    quote_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quote_requested_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    quote_amount: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    quote_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quote_file_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    quote_submitted_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    quote_approved: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    quote_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Job plan captured on acceptance.
    scheduled_arrival: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    estimated_hours: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    technician_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    job_plan: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)

    # Work description review.
    work_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    work_description_requested_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    work_description_submitted_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    work_description_approved_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    work_description_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Closure.
    completed_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    cancelled_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # SLA.
    response_due_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    resolution_due_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('OPEN','PROCESSING','AWAITING_QUOTE','QUOTE_SUBMITTED','ACCEPTED','ON_SITE',"
            "'IN_PROGRESS','AWAITING_DESCRIPTION','AWAITING_WORK_APPROVAL','COMPLETED','CLOSED','CANCELLED')",
            name="ck_tickets_status",
        ),
        CheckConstraint("priority IN ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_tickets_priority"),
        UniqueConstraint("tenant_id", "ticket_number", name="uq_tickets_tenant_number"),
        Index("ix_tickets_tenant_status", "tenant_id", "status"),
        Index("ix_tickets_tenant_assignee", "tenant_id", "assigned_to_id"),
        Index("ix_tickets_tenant_user", "tenant_id", "user_id"),
    )


class StatusHistoryTable(Base):
    """Append-only audit trail: one row per applied status transition."""

    __tablename__ = "status_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), nullable=False)
    from_status: Mapped[str] = mapped_column(String(32), nullable=False)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_status_history_ticket", "tenant_id", "ticket_id", "created_at"),)


class QuoteRequestTable(Base):
    """One contractor's participation in a ticket's quote round."""

    __tablename__ = "quote_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), nullable=False)
    contractor_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    amount: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("ticket_id", "contractor_id", name="uq_quote_requests_ticket_contractor"),
        CheckConstraint(
            "status IN ('pending','submitted','awarded','rejected')",
            name="ck_quote_requests_status",
        ),
        Index("ix_quote_requests_tenant_ticket", "tenant_id", "ticket_id"),
    )


class RatingTable(Base):
    """Requester's rating of the contractor, written when the ticket closes."""

    __tablename__ = "ratings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contractor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    punctuality: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_service: Mapped[int] = mapped_column(Integer, nullable=False)
    workmanship: Mapped[int] = mapped_column(Integer, nullable=False)
    overall: Mapped[int] = mapped_column(Integer, nullable=False)
    ppe_compliant: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    followed_site_procedures: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("ticket_id", "user_id", name="uq_ratings_ticket_user"),)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class PaymentBatchTable(Base):
    """A group of approved invoices settled by one proof of payment."""

    __tablename__ = "payment_batches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_number: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    total_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    invoice_count: Mapped[int] = mapped_column(Integer, nullable=False)
    pop_file_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    pop_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payment_date: Mapped[datetime] = mapped_column(_UTCDateTime(), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_payment_batches_tenant_created", "tenant_id", "created_at"),)


class InvoiceTable(Base):
    """A contractor's invoice for completed work.

    Revisions form a chain through ``previous_invoice_id``; only the head
    of the chain is active.  The partial unique index on ``ticket_id``
    guarantees at most one active invoice per ticket.
    """

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[str] = mapped_column(String(64), ForeignKey("tickets.id"), nullable=False)
    contractor_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0.00"))
    balance: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    quoted_amount: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    previous_invoice_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("invoices.id"), nullable=True)
    invoice_file_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    work_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hours_worked: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    hourly_rate: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    variation_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    clarification_request: Mapped[str | None] = mapped_column(Text, nullable=True)
    clarification_requested_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    clarification_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    clarification_responded_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    payment_batch_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("payment_batches.id"), nullable=True
    )
    proof_of_payment_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    paid_date: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING','APPROVED','REJECTED','PAID','CANCELLED','PROCESSING')",
            name="ck_invoices_status",
        ),
        Index(
            "uq_invoices_active_ticket",
            "ticket_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_invoices_tenant_status", "tenant_id", "status"),
        Index("ix_invoices_tenant_contractor", "tenant_id", "contractor_id"),
        Index("ix_invoices_batch", "payment_batch_id"),
    )


# ---------------------------------------------------------------------------
# Subscriptions and payments
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Per-tenant platform subscription."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False, unique=True)
    plan: Mapped[str] = mapped_column(String(16), nullable=False, default="BASIC")
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="TRIAL")
    current_period_start: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    suspended_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('TRIAL','ACTIVE','GRACE','READ_ONLY','SUSPENDED','CANCELLED')",
            name="ck_subscriptions_status",
        ),
        Index("ix_subscriptions_status", "status"),
    )


class PaymentTable(Base):
    """A subscription payment attempt.

    ``provider_payment_id`` is the merchant reference sent to the gateway
    and the idempotency key for result notifications.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("subscriptions.id"), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="paynow")
    provider_payment_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    poll_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    plan: Mapped[str | None] = mapped_column(String(16), nullable=True)
    billing_cycle: Mapped[str | None] = mapped_column(String(16), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    confirmed_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending','success','failed')", name="ck_payments_status"),
        Index("ix_payments_tenant_created", "tenant_id", "created_at"),
        Index("ix_payments_status_due", "status", "due_date"),
    )


class WebhookReceiptTable(Base):
    """Durable dedupe index of processed gateway notifications."""

    __tablename__ = "webhook_receipts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationOutboxTable(Base):
    """Notification written after the producing transaction committed."""

    __tablename__ = "notification_outbox"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending','delivered','failed')", name="ck_notification_outbox_status"),
        Index("ix_notification_outbox_recipient", "tenant_id", "recipient_id", "created_at"),
        Index("ix_notification_outbox_status", "status", "created_at"),
    )
