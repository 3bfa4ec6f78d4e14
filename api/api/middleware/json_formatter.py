"""Single-line JSON log formatter.

Enabled with ``API_STRUCTURED_LOGGING=true``.  Each record becomes one
JSON object::

    {
        "timestamp": "2026-03-02T08:15:00.123456+00:00",
        "level": "INFO",
        "logger": "api.services.invoice_service",
        "message": "Invoice approved",
        "correlation_id": "9c1e...",
        "request": { ... },        // access log records only
        "context": { ... },        // fields passed via extra={"context": ...}
        "exc_info": "Traceback ..."
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            payload["correlation_id"] = correlation_id

        for key in ("request", "context"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
