"""Priority-driven response and resolution targets."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from servicedesk_core.models.ticket import Priority


@dataclass(frozen=True)
class SLATarget:
    response: timedelta
    resolution: timedelta


SLA_TARGETS: dict[Priority, SLATarget] = {
    Priority.LOW: SLATarget(response=timedelta(hours=48), resolution=timedelta(hours=72)),
    Priority.MEDIUM: SLATarget(response=timedelta(hours=12), resolution=timedelta(hours=24)),
    Priority.HIGH: SLATarget(response=timedelta(hours=1), resolution=timedelta(hours=8)),
    Priority.CRITICAL: SLATarget(response=timedelta(minutes=30), resolution=timedelta(hours=2)),
}


def sla_deadlines(priority: Priority, opened_at: datetime) -> tuple[datetime, datetime]:
    """Return ``(response_due_at, resolution_due_at)`` for a ticket opened at *opened_at*."""
    target = SLA_TARGETS[priority]
    return opened_at + target.response, opened_at + target.resolution


def is_breached(due_at: datetime | None, now: datetime, *, met_at: datetime | None = None) -> bool:
    """Return ``True`` if *due_at* passed before the target was met."""
    if due_at is None:
        return False
    reference = met_at or now
    return reference > due_at
