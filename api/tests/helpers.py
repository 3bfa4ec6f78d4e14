"""Constants and request helpers shared by the API tests."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

from httpx import AsyncClient, Response

# Set JWT_SECRET env var BEFORE the application builds its TokenManager so
# tests and the AuthenticationMiddleware sign with the same secret.
_TEST_JWT_SECRET = "test-secret-key-for-servicedesk-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from api.security import TokenManager, load_token_config  # noqa: E402

TENANT_ID = "tenant-a"
TENANT_SLUG = "acme"
OTHER_TENANT_ID = "tenant-b"

CRON_SECRET = "cron-secret-for-tests"
PAYNOW_KEY = "paynow-integration-key"

# user id -> (role, department)
USERS: dict[str, tuple[str, str | None]] = {
    "requester": ("END_USER", "MAINTENANCE"),
    "requester-2": ("END_USER", "IT"),
    "contractor": ("CONTRACTOR", None),
    "contractor-2": ("CONTRACTOR", None),
    "tenant-admin": ("TENANT_ADMIN", None),
    "maintenance-admin": ("MAINTENANCE_ADMIN", None),
    "it-admin": ("IT_ADMIN", None),
    "super-admin": ("SUPER_ADMIN", None),
}

_token_manager = TokenManager(load_token_config())


def auth_headers(user_id: str, *, tenant_id: str = TENANT_ID, role: str | None = None) -> dict[str, str]:
    """Return an ``Authorization`` header for a seeded user.

    The role defaults to the one the user was seeded with.
    """
    resolved_role = role or USERS.get(user_id, ("END_USER", None))[0]
    token = _token_manager.generate_token(user_id, tenant_id, resolved_role)
    return {"Authorization": f"Bearer {token}"}


def job_plan() -> dict[str, Any]:
    return {
        "arrival_date": (datetime.now(UTC) + timedelta(days=1)).isoformat(),
        "estimated_duration": 3,
        "technician_name": "Sam Fixer",
    }


async def create_ticket(client: AsyncClient, *, user: str = "requester", **fields: Any) -> dict[str, Any]:
    body = {"title": "Leaking tap", "description": "Kitchen sink", "priority": "HIGH", "department": "MAINTENANCE"}
    body.update(fields)
    resp = await client.post("/api/v1/tickets", json=body, headers=auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def act(client: AsyncClient, ticket_id: str, user: str, action: str, **payload: Any) -> Response:
    return await client.post(
        f"/api/v1/tickets/{ticket_id}/actions",
        json={"action": action, **payload},
        headers=auth_headers(user),
    )


async def assign(client: AsyncClient, ticket_id: str, assignee: str, *, admin: str = "tenant-admin") -> Response:
    return await client.post(
        f"/api/v1/tickets/{ticket_id}/assign",
        json={"assignee_id": assignee},
        headers=auth_headers(admin),
    )


async def completed_ticket(client: AsyncClient, contractor: str = "contractor") -> dict[str, Any]:
    """Drive a fresh ticket through the contractor path to ``COMPLETED``."""
    ticket = await create_ticket(client)
    tid = ticket["id"]
    resp = await assign(client, tid, contractor)
    assert resp.status_code == 200, resp.text
    steps = [
        (contractor, "accept", {"job_plan": job_plan()}),
        ("requester", "confirm_arrival", {}),
        ("requester", "mark_done", {}),
        (contractor, "submit_description", {"work_description": "Replaced washer"}),
        ("requester", "approve_work", {}),
    ]
    for user, action, payload in steps:
        resp = await act(client, tid, user, action, **payload)
        assert resp.status_code == 200, resp.text
    return resp.json()


async def submit_invoice(
    client: AsyncClient, ticket_id: str, *, amount: str = "150.00", number: str = "INV-001", user: str = "contractor"
) -> Response:
    return await client.post(
        "/api/v1/invoices",
        json={"ticket_id": ticket_id, "invoice_number": number, "amount": amount},
        headers=auth_headers(user),
    )
