"""Domain models for the service-desk core."""

from servicedesk_core.models.billing import (
    AccessLevel,
    AccessMode,
    BillingCycle,
    PaymentProvider,
    PaymentStatus,
    SubscriptionPlan,
    SubscriptionStatus,
)
from servicedesk_core.models.invoice import InvoiceStatus, QuoteRequestStatus
from servicedesk_core.models.ticket import (
    BILLABLE_STATUSES,
    TERMINAL_STATUSES,
    Department,
    JobPlan,
    Priority,
    RatingInput,
    TicketStatus,
)

__all__ = [
    "AccessLevel",
    "AccessMode",
    "BILLABLE_STATUSES",
    "BillingCycle",
    "Department",
    "InvoiceStatus",
    "JobPlan",
    "PaymentProvider",
    "PaymentStatus",
    "Priority",
    "QuoteRequestStatus",
    "RatingInput",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "TicketStatus",
]
