"""Scheduled-job triggers authenticated by a shared secret.

An external scheduler calls these once a day (or more often; every job is
idempotent).  The secret is accepted as the ``secret`` query parameter or
the ``X-Cron-Secret`` header.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Query

from api.dependencies import NotifierDep, PublicSessionDep, SettingsDep, get_session_factory
from api.schemas import SubscriptionCheckResponse
from api.services.notification_dispatcher import deliver_pending
from api.services.subscription_service import run_daily_check

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


def _check_secret(configured: str, supplied: str | None) -> None:
    if not configured:
        logger.error("Cron trigger called but API_CRON_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Cron secret is not configured")
    if not supplied or not hmac.compare_digest(configured.encode(), supplied.encode()):
        logger.warning("Cron trigger rejected: invalid secret")
        raise HTTPException(status_code=401, detail="Invalid cron secret")


@router.api_route("/subscription-check", methods=["GET", "POST"], response_model=SubscriptionCheckResponse)
async def subscription_check(
    session: PublicSessionDep,
    settings: SettingsDep,
    notifier: NotifierDep,
    secret: str | None = Query(default=None),
    x_cron_secret: str | None = Header(default=None),
) -> dict[str, int]:
    """Run the daily subscription check across all tenants.

    Moves expired trials and periods to GRACE, expired grace periods to
    READ_ONLY and fails overdue pending payments.  Repeated calls are no-ops.
    """
    _check_secret(settings.cron_secret.get_secret_value(), secret or x_cron_secret)
    return await run_daily_check(session, notifier=notifier, grace_days=settings.grace_period_days)


@router.post("/notifications/deliver")
async def deliver_notifications(
    settings: SettingsDep,
    secret: str | None = Query(default=None),
    x_cron_secret: str | None = Header(default=None),
) -> dict[str, Any]:
    """Retry HTTP delivery of outbox notifications that have not gone through."""
    _check_secret(settings.cron_secret.get_secret_value(), secret or x_cron_secret)
    if not settings.notification_webhook_url:
        return {"delivered": 0, "failed": 0, "skipped": True}
    result = await deliver_pending(
        get_session_factory(),
        settings.notification_webhook_url,
        max_attempts=settings.notification_max_attempts,
    )
    return {**result, "skipped": False}
