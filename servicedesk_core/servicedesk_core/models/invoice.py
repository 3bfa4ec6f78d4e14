"""Invoice, quote and payment-batch enums."""

from __future__ import annotations

from enum import Enum


class InvoiceStatus(str, Enum):
    """Lifecycle state of a contractor invoice."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    PROCESSING = "PROCESSING"


class QuoteRequestStatus(str, Enum):
    """Per-contractor state inside the quote sub-flow."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    AWARDED = "awarded"
    REJECTED = "rejected"

