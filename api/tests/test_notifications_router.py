"""Tests for api/api/routers/notifications.py"""

from __future__ import annotations

import pytest
from helpers import assign, auth_headers, create_ticket
from httpx import AsyncClient


async def _inbox(client: AsyncClient, user: str, **params) -> list[dict]:
    resp = await client.get("/api/v1/notifications", params=params, headers=auth_headers(user))
    assert resp.status_code == 200
    return resp.json()


class TestNotificationInbox:
    @pytest.mark.asyncio
    async def test_newest_first(self, client: AsyncClient) -> None:
        ticket = await create_ticket(client)
        await assign(client, ticket["id"], "contractor")
        await client.post(f"/api/v1/tickets/{ticket['id']}/unassign", json={}, headers=auth_headers("tenant-admin"))

        events = [n["event_type"] for n in await _inbox(client, "contractor")]

        assert events == ["ticket.unassigned", "ticket.assigned"]

    @pytest.mark.asyncio
    async def test_mark_read_and_unread_filter(self, client: AsyncClient) -> None:
        await create_ticket(client)
        await create_ticket(client, title="Flickering light")
        first, second = await _inbox(client, "maintenance-admin")

        resp = await client.post(
            f"/api/v1/notifications/{first['id']}/read",
            headers=auth_headers("maintenance-admin"),
        )

        assert resp.status_code == 204
        unread = await _inbox(client, "maintenance-admin", unread_only="true")
        assert [n["id"] for n in unread] == [second["id"]]
        everything = await _inbox(client, "maintenance-admin")
        assert {n["id"]: n["read"] for n in everything} == {first["id"]: True, second["id"]: False}

    @pytest.mark.asyncio
    async def test_cannot_mark_someone_elses(self, client: AsyncClient) -> None:
        await create_ticket(client)
        notification = (await _inbox(client, "maintenance-admin"))[0]

        resp = await client.post(
            f"/api/v1/notifications/{notification['id']}/read",
            headers=auth_headers("tenant-admin"),
        )

        assert resp.status_code == 404
        assert (await _inbox(client, "maintenance-admin", unread_only="true"))[0]["id"] == notification["id"]

    @pytest.mark.asyncio
    async def test_unknown_notification_is_404(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/notifications/nope/read", headers=auth_headers("requester"))

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_pagination(self, client: AsyncClient) -> None:
        for i in range(3):
            await create_ticket(client, title=f"Leak {i}")

        page = await _inbox(client, "tenant-admin", limit=2, offset=1)

        assert len(page) == 2

    @pytest.mark.asyncio
    async def test_other_tenant_sees_nothing(self, client: AsyncClient) -> None:
        await create_ticket(client)

        resp = await client.get(
            "/api/v1/notifications",
            headers=auth_headers("tenant-admin", tenant_id="tenant-b", role="TENANT_ADMIN"),
        )

        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_readable_while_subscription_blocked(self, client: AsyncClient) -> None:
        await create_ticket(client)
        await client.post(
            "/api/v1/billing/subscription/suspend",
            json={"tenant_id": "tenant-a"},
            headers=auth_headers("super-admin"),
        )

        events = [n["event_type"] for n in await _inbox(client, "tenant-admin")]

        assert events[0] == "subscription.changed"
