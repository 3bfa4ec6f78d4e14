"""Exception handlers mapping the service error taxonomy onto HTTP responses.

Services raise the exceptions from :mod:`servicedesk_core.errors`; the
handlers registered here turn them into ``{"detail": ..., "code": ...}``
JSON bodies with the status code each class carries.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from servicedesk_core.errors import (
    AuthzError,
    ConflictError,
    Forbidden,
    IdempotencyShortCircuit,
    InvalidSignature,
    InvalidTransition,
    NotFoundError,
    PreconditionFailed,
    ProviderError,
    ServiceError,
    StateError,
    SubscriptionBlocked,
    ValidationError,
)
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

__all__ = [
    "AuthzError",
    "ConflictError",
    "Forbidden",
    "IdempotencyShortCircuit",
    "InvalidSignature",
    "InvalidTransition",
    "NotFoundError",
    "PreconditionFailed",
    "ProviderError",
    "ServiceError",
    "StateError",
    "SubscriptionBlocked",
    "ValidationError",
    "register_exception_handlers",
]


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers for service errors and common library errors."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if isinstance(exc, IdempotencyShortCircuit):
            logger.info("Idempotent replay on %s: %s", request.url.path, exc.message)
            return JSONResponse(status_code=exc.status_code, content={"status": "ok", **exc.to_dict()})
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        elif exc.status_code in (401, 403):
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request", "code": "validation_error"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied", "code": "forbidden"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error", "code": "internal_error"},
        )
