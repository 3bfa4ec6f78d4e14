"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from servicedesk_core.state.database import get_engine, get_session, session_factory, set_tenant_context
from servicedesk_core.state.repository import (
    InvoiceRepository,
    NotificationOutboxRepository,
    PaymentBatchRepository,
    PaymentRepository,
    QuoteRequestRepository,
    RatingRepository,
    SubscriptionRepository,
    TenantRepository,
    TicketRepository,
    UserRepository,
    WebhookReceiptRepository,
)

__all__ = [
    "InvoiceRepository",
    "NotificationOutboxRepository",
    "PaymentBatchRepository",
    "PaymentRepository",
    "QuoteRequestRepository",
    "RatingRepository",
    "SubscriptionRepository",
    "TenantRepository",
    "TicketRepository",
    "UserRepository",
    "WebhookReceiptRepository",
    "get_engine",
    "get_session",
    "session_factory",
    "set_tenant_context",
]
