"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a Kubernetes-style
readiness probe registered at the application root (no version prefix) so
that orchestrators and load-balancers can gate traffic independently of the
API version.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api import __version__
from api.dependencies import SettingsDep, get_db_session
from api.schemas import HealthResponse

logger = logging.getLogger(__name__)

# Non-tenant-scoped session for health/readiness probes.
HealthSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

router = APIRouter(tags=["health"])


async def _db_ok(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health(session: HealthSessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health with dependency checks.

    The endpoint always returns HTTP 200 so that load-balancers see the
    service as alive.  ``db`` reports database reachability and
    ``payment_gateway`` whether Paynow credentials are configured.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session) else "degraded",
        "payment_gateway": (
            "configured"
            if settings.paynow_integration_id and settings.paynow_integration_key.get_secret_value()
            else "unconfigured"
        ),
    }


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: HealthSessionDep) -> JSONResponse:
    """Kubernetes-style readiness probe.

    Returns HTTP 200 with ``"ready"``, or HTTP 503 with ``"not_ready"`` if
    the database is unreachable.
    """
    db_ok = await _db_ok(session)
    if not db_ok:
        logger.error("Readiness: DB check failed")
    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "ready" if db_ok else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if db_ok else "unavailable"},
        },
    )
