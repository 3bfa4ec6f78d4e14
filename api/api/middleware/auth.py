"""Authentication middleware that validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
via :class:`TokenManager`, and populates ``request.state`` with
``tenant_id``, ``sub`` (user id) and ``role``.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication: health
probes, API docs, the payment gateway's result callback (authenticated by
its own hash) and the cron trigger (authenticated by a shared secret).
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenManager, load_token_config

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/paynow/webhook",
        "/api/v1/cron/subscription-check",
        "/api/v1/cron/notifications/deliver",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Lets public paths through untouched.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``tenant_id``, ``sub`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(load_token_config())
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403; anything else is unauthenticated.
            if "expired" in error_msg.lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {error_msg}"})

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.role = claims.role

        return await call_next(request)
