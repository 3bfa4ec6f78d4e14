"""Fire-and-forget notifications with a transactional outbox.

Services never talk to delivery channels directly.  They stage events on
a per-request :class:`Notifier`; the request's session dependency hands
the staged events to the :class:`NotificationDispatcher` only after the
business transaction has committed, so a rolled-back operation never
notifies anyone.

The dispatcher then:

1. writes one ``notification_outbox`` row per recipient in its own
   session (users poll these via ``GET /notifications``);
2. emits the event on the in-process :class:`EventBus`, whose handlers
   (log, optional HTTP delivery) run concurrently and never raise.

Usage::

    notifier.notify(
        EventType.TICKET_ASSIGNED,
        tenant_id=ticket.tenant_id,
        recipient_ids=[assignee_id],
        title="New job assigned",
        message=f"Ticket {ticket.ticket_number} has been assigned to you.",
        data={"ticket_id": ticket.id},
    )

INVARIANT: dispatch failures are logged but never propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, Field
from servicedesk_core.state.repository import NotificationOutboxRepository

from api.middleware.logging import get_correlation_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_DELIVERY_TIMEOUT_SECONDS = 5.0


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Notification events emitted by the service desk."""

    TICKET_CREATED = "ticket.created"
    TICKET_ASSIGNED = "ticket.assigned"
    TICKET_UNASSIGNED = "ticket.unassigned"
    TICKET_STATUS_CHANGED = "ticket.status_changed"
    TICKET_CANCELLED = "ticket.cancelled"
    QUOTE_REQUESTED = "quote.requested"
    QUOTE_SUBMITTED = "quote.submitted"
    QUOTE_APPROVED = "quote.approved"
    QUOTE_REJECTED = "quote.rejected"
    INVOICE_SUBMITTED = "invoice.submitted"
    INVOICE_APPROVED = "invoice.approved"
    INVOICE_REJECTED = "invoice.rejected"
    INVOICE_PAID = "invoice.paid"
    INVOICE_CLARIFICATION_REQUESTED = "invoice.clarification_requested"
    INVOICE_CLARIFICATION_RESPONDED = "invoice.clarification_responded"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHANGED = "subscription.changed"
    PAYMENT_FAILED = "payment.failed"


class NotificationEvent(BaseModel):
    """Event descriptor handed to the dispatcher."""

    event_type: EventType
    tenant_id: str
    recipient_ids: list[str]
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: get_correlation_id() or uuid.uuid4().hex)
    outbox_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Per-request staging buffer
# ---------------------------------------------------------------------------


class Notifier:
    """Collects events raised during one unit of work."""

    def __init__(self) -> None:
        self._events: list[NotificationEvent] = []

    def notify(
        self,
        event_type: EventType,
        *,
        tenant_id: str,
        recipient_ids: Iterable[str | None],
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        exclude: str | None = None,
    ) -> None:
        """Stage an event for the recipients that remain after filtering.

        ``None`` entries, duplicates and *exclude* (usually the acting user)
        are dropped; an event left with no recipients is not staged.
        """
        recipients: list[str] = []
        for rid in recipient_ids:
            if rid and rid != exclude and rid not in recipients:
                recipients.append(rid)
        if not recipients:
            return
        self._events.append(
            NotificationEvent(
                event_type=event_type,
                tenant_id=tenant_id,
                recipient_ids=recipients,
                title=title,
                message=message,
                data=data or {},
            )
        )

    @property
    def pending(self) -> list[NotificationEvent]:
        return list(self._events)

    def drain(self) -> list[NotificationEvent]:
        events, self._events = self._events, []
        return events

    def discard(self) -> None:
        if self._events:
            logger.debug("Discarding %d staged notification(s)", len(self._events))
        self._events = []


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

EventHandler = Callable[[NotificationEvent], Awaitable[None]]


class EventBus:
    """In-process event bus with async handler dispatch.

    Handlers are called concurrently via ``asyncio.gather``.  Each handler
    runs in a ``try / except`` so that a single failing handler does not
    affect others or the caller.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}

    def register_handler(self, handler: EventHandler, *, event_type: EventType | None = None) -> None:
        """Register a handler for a specific event type (``None`` = all events)."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered event handler %s for %s", handler.__name__, event_type or "ALL")

    async def emit(self, event: NotificationEvent) -> None:
        """Deliver *event* to every matching handler; never raises."""
        handlers = list(self._handlers.get(event.event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            return

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s (tenant=%s)",
                    handler.__name__,
                    event.event_type.value,
                    event.tenant_id,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    @property
    def handler_count(self) -> int:
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def log_handler(event: NotificationEvent) -> None:
    logger.info(
        "NOTIFY: %s tenant=%s recipients=%d corr=%s",
        event.event_type.value,
        event.tenant_id,
        len(event.recipient_ids),
        event.correlation_id[:8],
    )


def _delivery_body(event: NotificationEvent) -> dict[str, Any]:
    return event.model_dump(mode="json", exclude={"outbox_ids"})


def make_http_delivery_handler(
    url: str,
    session_factory: async_sessionmaker[AsyncSession] | None,
    *,
    max_attempts: int = 5,
) -> EventHandler:
    """Create a handler that POSTs each event to *url*.

    The outcome is recorded on the event's outbox rows so that
    :func:`deliver_pending` only retries what did not go through.
    """

    async def _deliver(event: NotificationEvent) -> None:
        error = await _post(url, _delivery_body(event))
        if session_factory is None or not event.outbox_ids:
            return
        async with session_factory() as session:
            repo = NotificationOutboxRepository(session, tenant_id=event.tenant_id)
            for outbox_id in event.outbox_ids:
                await repo.record_attempt(outbox_id, error=error, give_up=max_attempts <= 1)
            await session.commit()

    _deliver.__name__ = "http_delivery_handler"
    return _deliver


async def _post(url: str, body: dict[str, Any]) -> str | None:
    """POST *body*; return an error description or ``None`` on success."""
    try:
        async with httpx.AsyncClient(timeout=_DELIVERY_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=body)
    except httpx.HTTPError as exc:
        logger.warning("Notification delivery to %s failed: %s", url, exc)
        return str(exc) or exc.__class__.__name__
    if response.status_code >= 400:
        logger.warning("Notification delivery to %s returned %d", url, response.status_code)
        return f"HTTP {response.status_code}"
    return None


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Persists staged events to the outbox and fans them out on the bus.

    Parameters
    ----------
    session_factory:
        Factory for the outbox sessions.  ``None`` skips persistence (the
        events are still emitted on the bus).
    bus:
        Event bus receiving every dispatched event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None,
        bus: EventBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.bus = bus or EventBus()

    async def dispatch(self, events: Iterable[NotificationEvent]) -> None:
        """Dispatch committed events.  Failures are logged, never raised."""
        for event in events:
            try:
                await self._persist(event)
            except Exception:
                logger.exception(
                    "Failed to write outbox rows for %s (tenant=%s)",
                    event.event_type.value,
                    event.tenant_id,
                )
            await self.bus.emit(event)

    async def _persist(self, event: NotificationEvent) -> None:
        if self._session_factory is None:
            return
        async with self._session_factory() as session:
            repo = NotificationOutboxRepository(session, tenant_id=event.tenant_id)
            for recipient_id in event.recipient_ids:
                row = await repo.add(
                    recipient_id=recipient_id,
                    event_type=event.event_type.value,
                    title=event.title,
                    message=event.message,
                    data={**event.data, "correlation_id": event.correlation_id},
                )
                event.outbox_ids.append(row.id)
            await session.commit()


async def deliver_pending(
    session_factory: async_sessionmaker[AsyncSession],
    url: str,
    *,
    max_attempts: int = 5,
    limit: int = 100,
) -> dict[str, int]:
    """Retry HTTP delivery of outbox rows that have not gone through yet.

    Returns
    -------
    dict
        ``{"delivered": n, "failed": n}`` for this run.
    """
    delivered = failed = 0
    async with session_factory() as session:
        rows = await NotificationOutboxRepository(session).list_undelivered(max_attempts=max_attempts, limit=limit)
        for row in rows:
            body = {
                "id": row.id,
                "event_type": row.event_type,
                "tenant_id": row.tenant_id,
                "recipient_ids": [row.recipient_id],
                "title": row.title,
                "message": row.message,
                "data": row.data or {},
                "timestamp": row.created_at.isoformat(),
            }
            error = await _post(url, body)
            await NotificationOutboxRepository(session, tenant_id=row.tenant_id).record_attempt(
                row.id,
                error=error,
                give_up=row.attempts + 1 >= max_attempts,
            )
            if error is None:
                delivered += 1
            else:
                failed += 1
        await session.commit()
    logger.info("Outbox delivery run: delivered=%d failed=%d", delivered, failed)
    return {"delivered": delivered, "failed": failed}


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_dispatcher: NotificationDispatcher | None = None


def init_dispatcher(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    webhook_url: str = "",
    max_attempts: int = 5,
) -> NotificationDispatcher:
    """Create the global dispatcher and register the built-in handlers."""
    global _dispatcher  # noqa: PLW0603
    bus = EventBus()
    bus.register_handler(log_handler)
    if webhook_url:
        bus.register_handler(make_http_delivery_handler(webhook_url, session_factory, max_attempts=max_attempts))
    _dispatcher = NotificationDispatcher(session_factory, bus)
    logger.info("Notification dispatcher initialised with %d handler(s)", bus.handler_count)
    return _dispatcher


def get_dispatcher() -> NotificationDispatcher:
    """Return the global dispatcher (a persistence-less one if not initialised)."""
    if _dispatcher is None:
        return init_dispatcher()
    return _dispatcher
