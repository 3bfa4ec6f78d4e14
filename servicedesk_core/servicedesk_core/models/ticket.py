"""Ticket domain enums and payload models.

``TicketStatus`` is the single source of truth for where a ticket is in
its lifecycle.  Phase timestamps on the ticket row are conveniences; the
append-only status history is the audit record.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class TicketStatus(str, Enum):
    """Lifecycle state of a service ticket."""

    OPEN = "OPEN"
    PROCESSING = "PROCESSING"
    AWAITING_QUOTE = "AWAITING_QUOTE"
    QUOTE_SUBMITTED = "QUOTE_SUBMITTED"
    ACCEPTED = "ACCEPTED"
    ON_SITE = "ON_SITE"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_DESCRIPTION = "AWAITING_DESCRIPTION"
    AWAITING_WORK_APPROVAL = "AWAITING_WORK_APPROVAL"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


# No outgoing edges from these states.
TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.CLOSED, TicketStatus.CANCELLED})

# Work is done; the ticket is billable but may no longer be reassigned or cancelled.
BILLABLE_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.COMPLETED, TicketStatus.CLOSED})


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Department(str, Enum):
    """Ticket type; each maps to the department admin that owns it."""

    IT = "IT"
    SALES = "SALES"
    RETAIL = "RETAIL"
    MAINTENANCE = "MAINTENANCE"
    PROJECTS = "PROJECTS"
    GENERAL = "GENERAL"


class JobPlan(BaseModel):
    """Contractor's plan submitted when accepting a job."""

    arrival_date: datetime = Field(..., description="Scheduled arrival on site.")
    estimated_duration: float = Field(..., gt=0, description="Estimated duration in hours.")
    technician_name: str = Field(..., min_length=1, max_length=256)
    technician_phone: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=4000)

    @field_validator("technician_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("technician_name must not be blank")
        return value


class RatingInput(BaseModel):
    """Requester's rating of the contractor, captured when closing."""

    punctuality: int = Field(..., ge=0, le=5)
    customer_service: int = Field(..., ge=1, le=5)
    workmanship: int = Field(..., ge=1, le=5)
    overall: int = Field(..., ge=1, le=5)
    ppe_compliant: bool = True
    followed_site_procedures: bool = True
    comment: str | None = Field(default=None, max_length=4000)
