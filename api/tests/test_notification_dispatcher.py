"""Tests for api/api/services/notification_dispatcher.py

Covers:
- Notifier staging: recipient filtering, drain / discard
- EventBus: typed and catch-all handlers, failure isolation
- NotificationDispatcher: outbox rows per recipient, bus fan-out
- HTTP delivery handler and deliver_pending retry bookkeeping
- Staged events are dropped when the request's transaction fails
"""

from __future__ import annotations

import pytest
from helpers import TENANT_ID, assign, auth_headers, create_ticket
from httpx import AsyncClient
from servicedesk_core.state.repository import NotificationOutboxRepository
from servicedesk_core.state.tables import NotificationOutboxTable
from sqlalchemy import select

import api.services.notification_dispatcher as dispatcher_module
from api.services.notification_dispatcher import (
    EventBus,
    EventType,
    NotificationDispatcher,
    NotificationEvent,
    Notifier,
    deliver_pending,
    make_http_delivery_handler,
)


def _event(**overrides) -> NotificationEvent:
    fields = {
        "event_type": EventType.INVOICE_APPROVED,
        "tenant_id": TENANT_ID,
        "recipient_ids": ["contractor"],
        "title": "Invoice approved",
        "message": "INV-001 was approved",
        "data": {"invoice_id": "inv-1"},
    }
    fields.update(overrides)
    return NotificationEvent(**fields)


async def _outbox_rows(session_factory) -> list[NotificationOutboxTable]:
    async with session_factory() as session:
        result = await session.execute(select(NotificationOutboxTable).order_by(NotificationOutboxTable.recipient_id))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class TestNotifier:
    def test_filters_none_duplicates_and_actor(self) -> None:
        notifier = Notifier()

        notifier.notify(
            EventType.TICKET_STATUS_CHANGED,
            tenant_id=TENANT_ID,
            recipient_ids=["requester", None, "contractor", "requester", "tenant-admin"],
            exclude="tenant-admin",
            title="Status changed",
            message="Ticket moved",
        )

        assert notifier.pending[0].recipient_ids == ["requester", "contractor"]

    def test_event_without_recipients_is_not_staged(self) -> None:
        notifier = Notifier()

        notifier.notify(
            EventType.TICKET_CREATED,
            tenant_id=TENANT_ID,
            recipient_ids=["requester"],
            exclude="requester",
            title="t",
            message="m",
        )

        assert notifier.pending == []

    def test_drain_empties_buffer(self) -> None:
        notifier = Notifier()
        notifier.notify(EventType.INVOICE_PAID, tenant_id=TENANT_ID, recipient_ids=["c"], title="t", message="m")

        drained = notifier.drain()

        assert [e.event_type for e in drained] == [EventType.INVOICE_PAID]
        assert notifier.pending == []

    def test_discard_drops_everything(self) -> None:
        notifier = Notifier()
        notifier.notify(EventType.INVOICE_PAID, tenant_id=TENANT_ID, recipient_ids=["c"], title="t", message="m")

        notifier.discard()

        assert notifier.drain() == []


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class TestEventBus:
    @pytest.mark.asyncio
    async def test_typed_and_catch_all_handlers(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def on_approved(event: NotificationEvent) -> None:
            seen.append("typed")

        async def on_any(event: NotificationEvent) -> None:
            seen.append("any")

        bus.register_handler(on_approved, event_type=EventType.INVOICE_APPROVED)
        bus.register_handler(on_any)

        await bus.emit(_event())
        await bus.emit(_event(event_type=EventType.INVOICE_PAID))

        assert sorted(seen) == ["any", "any", "typed"]
        assert bus.handler_count == 2

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, caplog) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def broken(event: NotificationEvent) -> None:
            raise RuntimeError("smtp down")

        async def healthy(event: NotificationEvent) -> None:
            seen.append(event.title)

        bus.register_handler(broken)
        bus.register_handler(healthy)

        await bus.emit(_event())

        assert seen == ["Invoice approved"]
        assert "broken failed" in caplog.text


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_writes_one_row_per_recipient(self, session_factory) -> None:
        dispatcher = NotificationDispatcher(session_factory)
        event = _event(recipient_ids=["contractor", "tenant-admin"])

        await dispatcher.dispatch([event])

        rows = await _outbox_rows(session_factory)
        assert [r.recipient_id for r in rows] == ["contractor", "tenant-admin"]
        assert all(r.status == "pending" and r.attempts == 0 for r in rows)
        assert rows[0].data["invoice_id"] == "inv-1"
        assert rows[0].data["correlation_id"] == event.correlation_id
        assert sorted(event.outbox_ids) == sorted(r.id for r in rows)

    @pytest.mark.asyncio
    async def test_emits_after_persisting(self, session_factory) -> None:
        bus = EventBus()
        counts: list[int] = []

        async def handler(event: NotificationEvent) -> None:
            counts.append(len(await _outbox_rows(session_factory)))

        bus.register_handler(handler)

        await NotificationDispatcher(session_factory, bus).dispatch([_event()])

        assert counts == [1]

    @pytest.mark.asyncio
    async def test_outbox_failure_still_emits(self, session_factory, monkeypatch) -> None:
        async def broken_add(self, **fields):
            raise RuntimeError("disk full")

        monkeypatch.setattr(NotificationOutboxRepository, "add", broken_add)
        bus = EventBus()
        seen: list[NotificationEvent] = []

        async def handler(event: NotificationEvent) -> None:
            seen.append(event)

        bus.register_handler(handler)

        await NotificationDispatcher(session_factory, bus).dispatch([_event()])

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_without_session_factory_only_emits(self) -> None:
        bus = EventBus()
        seen: list[NotificationEvent] = []

        async def handler(event: NotificationEvent) -> None:
            seen.append(event)

        bus.register_handler(handler)

        await NotificationDispatcher(None, bus).dispatch([_event()])

        assert seen[0].outbox_ids == []


# ---------------------------------------------------------------------------
# HTTP delivery
# ---------------------------------------------------------------------------


class TestHttpDelivery:
    @pytest.mark.asyncio
    async def test_success_marks_rows_delivered(self, session_factory, monkeypatch) -> None:
        posted: list[tuple[str, dict]] = []

        async def fake_post(url, body):
            posted.append((url, body))
            return None

        monkeypatch.setattr(dispatcher_module, "_post", fake_post)
        bus = EventBus()
        bus.register_handler(make_http_delivery_handler("https://hooks.test/n", session_factory))

        await NotificationDispatcher(session_factory, bus).dispatch([_event()])

        url, body = posted[0]
        assert url == "https://hooks.test/n"
        assert body["event_type"] == "invoice.approved"
        assert "outbox_ids" not in body
        rows = await _outbox_rows(session_factory)
        assert rows[0].status == "delivered"
        assert rows[0].attempts == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_row_for_retry(self, session_factory, monkeypatch) -> None:
        async def failing_post(url, body):
            return "HTTP 502"

        monkeypatch.setattr(dispatcher_module, "_post", failing_post)
        bus = EventBus()
        bus.register_handler(make_http_delivery_handler("https://hooks.test/n", session_factory, max_attempts=3))

        await NotificationDispatcher(session_factory, bus).dispatch([_event()])

        row = (await _outbox_rows(session_factory))[0]
        assert row.status == "pending"
        assert row.last_error == "HTTP 502"

    @pytest.mark.asyncio
    async def test_deliver_pending_gives_up_after_max_attempts(self, session_factory, monkeypatch) -> None:
        async def failing_post(url, body):
            return "connection refused"

        monkeypatch.setattr(dispatcher_module, "_post", failing_post)
        await NotificationDispatcher(session_factory).dispatch([_event()])

        first = await deliver_pending(session_factory, "https://hooks.test/n", max_attempts=2)
        second = await deliver_pending(session_factory, "https://hooks.test/n", max_attempts=2)
        third = await deliver_pending(session_factory, "https://hooks.test/n", max_attempts=2)

        assert first == {"delivered": 0, "failed": 1}
        assert second == {"delivered": 0, "failed": 1}
        assert third == {"delivered": 0, "failed": 0}
        row = (await _outbox_rows(session_factory))[0]
        assert row.status == "failed"
        assert row.attempts == 2


# ---------------------------------------------------------------------------
# Transaction boundary
# ---------------------------------------------------------------------------


class TestCommitBoundary:
    @pytest.mark.asyncio
    async def test_failed_request_notifies_nobody(self, client: AsyncClient) -> None:
        ticket = await create_ticket(client)
        await assign(client, ticket["id"], "contractor")

        # second assignment loses the compare-and-swap and rolls back
        resp = await client.post(
            f"/api/v1/tickets/{ticket['id']}/assign",
            json={"assignee_id": "contractor-2"},
            headers=auth_headers("tenant-admin"),
        )

        assert resp.status_code == 409
        inbox = await client.get("/api/v1/notifications", headers=auth_headers("contractor-2"))
        assert inbox.json() == []
