"""Request logging and correlation-id propagation.

Every request is tagged with a correlation id, taken from the incoming
``X-Correlation-ID`` header or freshly generated.  The id is echoed on the
response, stored on ``request.state`` and held in a context variable so
that service-layer log records (ticket transitions, webhook handling,
notification delivery) carry it through :class:`CorrelationLoggingFilter`.
"""

from __future__ import annotations

import contextvars
import logging
import re
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "x-cron-secret", "cookie"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"
_CORRELATION_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Return the current correlation id (or empty string outside a request)."""
    return _correlation_id_var.get()


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    out: dict[str, str] = {}
    for key, value in request.headers.items():
        if key.lower() in _SENSITIVE_HEADERS:
            out[key] = _MASK
        else:
            out[key] = value
    return out


def _incoming_correlation_id(request: Request) -> str:
    candidate = request.headers.get(_CORRELATION_HEADER, "").strip()
    if candidate and _CORRELATION_RE.match(candidate):
        return candidate
    return uuid.uuid4().hex


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    The payload also names the tenant and user when the authentication
    middleware has populated ``request.state``.  Callers that send a
    malformed correlation header get a fresh id instead.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = _incoming_correlation_id(request)
        token = _correlation_id_var.set(correlation_id)
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500

            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_id": getattr(request.state, "tenant_id", "anonymous"),
                "user_id": getattr(request.state, "sub", None),
                "role": getattr(request.state, "role", None),
                "headers": _safe_headers(request),
            }
            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})
            _correlation_id_var.reset(token)


class CorrelationLoggingFilter(logging.Filter):
    """Inject ``correlation_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id_var.get()  # type: ignore[attr-defined]
        return True
