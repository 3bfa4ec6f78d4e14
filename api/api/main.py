"""FastAPI application entry-point for the service desk API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import dispose_engine, get_session_factory, init_engine
from api.errors import register_exception_handlers
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import CorrelationLoggingFilter, RequestLoggingMiddleware
from api.routers import (
    billing,
    cron,
    health,
    invoices,
    notifications,
    payment_batches,
    tickets,
)
from api.services.notification_dispatcher import init_dispatcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use Alembic migrations).
    - Initialise the notification dispatcher.

    On shutdown:
    - Dispose the database engine connection pool.
    """
    import os as _os

    settings: APISettings = load_api_settings()

    # Fail fast: refuse to start in production/staging without JWT_SECRET.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not _os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )

    # Structured JSON logging for log aggregation.
    if settings.structured_logging:
        from api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        handler.addFilter(CorrelationLoggingFilter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    # Database engine.
    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from servicedesk_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if is_local else "dev auto-migration",
        )

    # Notification dispatcher (outbox + optional HTTP delivery).
    init_dispatcher(
        get_session_factory(),
        webhook_url=settings.notification_webhook_url,
        max_attempts=settings.notification_max_attempts,
    )

    if not settings.cron_secret.get_secret_value():
        logger.warning("API_CRON_SECRET is not set; the cron trigger will refuse every call")

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Service Desk API",
        description="Multi-tenant maintenance tickets, contractor invoicing and platform subscriptions.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
        expose_headers=["X-Correlation-ID", "X-Subscription-Level", "X-Subscription-Warning"],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    # Versioned API routes: all business endpoints live under /api/v1.
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(tickets.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(payment_batches.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")

    # Infrastructure endpoints outside versioning (probes).
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    register_exception_handlers(app)

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
