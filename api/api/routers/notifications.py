"""In-app notification inbox for the authenticated user."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from servicedesk_core.state.repository import NotificationOutboxRepository
from servicedesk_core.state.tables import NotificationOutboxTable

from api.dependencies import ActorDep, SessionDep, TenantDep
from api.schemas import NotificationResponse

# Reading notifications stays available in every subscription state.
router = APIRouter(prefix="/notifications", tags=["notifications"])


def _to_response(row: NotificationOutboxTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "event_type": row.event_type,
        "title": row.title,
        "message": row.message,
        "data": row.data or {},
        "read": row.read_at is not None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    """Return the caller's notifications, newest first."""
    repo = NotificationOutboxRepository(session, tenant_id=tenant_id)
    rows = await repo.list_for_recipient(actor.user_id, unread_only=unread_only, limit=limit, offset=offset)
    return [_to_response(row) for row in rows]


@router.post("/{notification_id}/read", status_code=204)
async def mark_notification_read(
    notification_id: str,
    session: SessionDep,
    tenant_id: TenantDep,
    actor: ActorDep,
) -> None:
    repo = NotificationOutboxRepository(session, tenant_id=tenant_id)
    if not await repo.mark_read(notification_id, actor.user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
