"""API router modules for the service desk."""

from __future__ import annotations

from api.routers import (
    billing,
    cron,
    health,
    invoices,
    notifications,
    payment_batches,
    tickets,
)

__all__ = [
    "billing",
    "cron",
    "health",
    "invoices",
    "notifications",
    "payment_batches",
    "tickets",
]
