"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
Money is serialised as a decimal string and timestamps as ISO-8601.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Ticket schemas
# ---------------------------------------------------------------------------


class TicketResponse(BaseModel):
    """A service ticket."""

    id: str
    ticket_number: str
    title: str
    description: str = ""
    status: str
    priority: str
    department: str
    location: str | None = None
    user_id: str
    assigned_to_id: str | None = None
    hq_assigned_at: str | None = None
    quote_requested: bool = False
    quote_amount: str | None = None
    quote_description: str | None = None
    quote_file_url: str | None = None
    quote_approved: bool | None = None
    quote_rejection_reason: str | None = None
    scheduled_arrival: str | None = None
    estimated_hours: str | None = None
    technician_name: str | None = None
    job_plan: dict[str, Any] | None = None
    work_description: str | None = None
    work_description_rejection_reason: str | None = None
    cancellation_reason: str | None = None
    cancelled_by_id: str | None = None
    response_due_at: str | None = None
    resolution_due_at: str | None = None
    completed_at: str | None = None
    closed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class TicketDetailResponse(TicketResponse):
    """A ticket with SLA flags and the statuses the caller may move it to."""

    response_breached: bool = False
    resolution_breached: bool = False
    allowed_next: list[str] = Field(default_factory=list)


class StatusHistoryResponse(BaseModel):
    """One entry of a ticket's append-only status history."""

    id: str
    ticket_id: str
    from_status: str | None = None
    to_status: str
    changed_by_id: str
    reason: str | None = None
    created_at: str | None = None


class QuoteRequestResponse(BaseModel):
    """A contractor's quote request on a ticket."""

    id: str
    ticket_id: str
    contractor_id: str
    status: str
    amount: str | None = None
    description: str | None = None
    file_url: str | None = None
    notes: str | None = None
    submitted_at: str | None = None
    responded_at: str | None = None


class UnassignResponse(BaseModel):
    ticket: TicketResponse
    previous_assignee_id: str | None = None


class QuoteRequestsCreatedResponse(BaseModel):
    ticket: TicketResponse
    quote_requests: list[QuoteRequestResponse] = Field(default_factory=list)


class QuoteSubmissionResponse(BaseModel):
    ticket: TicketResponse
    quote_request: QuoteRequestResponse


# ---------------------------------------------------------------------------
# Invoice schemas
# ---------------------------------------------------------------------------


class InvoiceResponse(BaseModel):
    """A contractor invoice revision."""

    id: str
    ticket_id: str
    contractor_id: str
    invoice_number: str
    amount: str
    paid_amount: str
    balance: str
    quoted_amount: str | None = None
    status: str
    is_active: bool
    revision_number: int
    previous_invoice_id: str | None = None
    invoice_file_url: str | None = None
    work_description: str | None = None
    hours_worked: str | None = None
    hourly_rate: str | None = None
    variation_description: str | None = None
    notes: str | None = None
    rejection_reason: str | None = None
    clarification_request: str | None = None
    clarification_requested_at: str | None = None
    clarification_response: str | None = None
    clarification_responded_at: str | None = None
    payment_batch_id: str | None = None
    proof_of_payment_url: str | None = None
    paid_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class PaymentBatchResponse(BaseModel):
    """A payment batch, optionally with the invoices it settled."""

    id: str
    batch_number: str
    total_amount: str
    invoice_count: int
    pop_file_url: str
    pop_reference: str | None = None
    payment_date: str | None = None
    notes: str | None = None
    processed_by_id: str
    created_at: str | None = None
    invoices: list[InvoiceResponse] | None = None


# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class SubscriptionResponse(BaseModel):
    """A tenant subscription with its derived access level."""

    id: str
    tenant_id: str
    plan: str
    billing_cycle: str
    status: str
    current_period_start: str | None = None
    current_period_end: str | None = None
    grace_period_end: str | None = None
    trial_ends_at: str | None = None
    suspended_reason: str | None = None
    access_level: str | None = None
    message: str | None = None
    days_remaining: int = 0


class PaymentResponse(BaseModel):
    """A subscription payment."""

    id: str
    tenant_id: str
    subscription_id: str | None = None
    invoice_number: str | None = None
    reference: str
    amount: str
    currency: str
    status: str
    provider: str
    plan: str | None = None
    billing_cycle: str | None = None
    failure_reason: str | None = None
    due_date: str | None = None
    paid_at: str | None = None
    confirmed_by_id: str | None = None
    created_at: str | None = None


class InitiatePaymentResponse(BaseModel):
    payment_id: str
    reference: str
    redirect_url: str | None = None
    poll_url: str | None = None
    amount: str
    invoice_number: str | None = None


class BankTransferResponse(BaseModel):
    payment: PaymentResponse
    reference: str
    bank_details: dict[str, str]


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment gateway."""

    status: str = "ok"
    payment_id: str | None = None
    outcome: str | None = None


class SubscriptionCheckResponse(BaseModel):
    """Counts of changes applied by one daily subscription check."""

    overdue_payments: int
    to_grace: int
    to_read_only: int


# ---------------------------------------------------------------------------
# Notification schemas
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    """A notification addressed to the caller."""

    id: str
    event_type: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Health schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response from the health-check endpoint."""

    status: str
    version: str
    db: str
    payment_gateway: str
