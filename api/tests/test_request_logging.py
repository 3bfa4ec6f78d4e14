"""Tests for api/api/middleware/logging.py

Covers:
- X-Correlation-ID echo and replacement of malformed ids
- Access log payload: tenant, user, masked credentials
- CorrelationLoggingFilter outside and inside a request
"""

from __future__ import annotations

import logging

import pytest
from helpers import CRON_SECRET, auth_headers
from httpx import AsyncClient

from api.middleware.logging import CorrelationLoggingFilter, get_correlation_id


def _access_records(caplog: pytest.LogCaptureFixture) -> list[dict]:
    return [r.request for r in caplog.records if r.name == "api.access"]


class TestCorrelationHeader:
    @pytest.mark.asyncio
    async def test_generated_when_absent(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")

        assert len(resp.headers["X-Correlation-ID"]) == 32

    @pytest.mark.asyncio
    async def test_incoming_id_is_echoed(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "job-42.retry_1"})

        assert resp.headers["X-Correlation-ID"] == "job-42.retry_1"

    @pytest.mark.asyncio
    async def test_malformed_id_is_replaced(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "bad id; drop table"})

        assert resp.headers["X-Correlation-ID"] != "bad id; drop table"
        assert len(resp.headers["X-Correlation-ID"]) == 32

    @pytest.mark.asyncio
    async def test_echoed_on_error_responses(self, client: AsyncClient) -> None:
        resp = await client.get(
            "/api/v1/tickets/does-not-exist",
            headers={**auth_headers("requester"), "X-Correlation-ID": "trace-404"},
        )

        assert resp.status_code == 404
        assert resp.headers["X-Correlation-ID"] == "trace-404"


class TestAccessLog:
    @pytest.mark.asyncio
    async def test_payload_names_tenant_and_user(self, client: AsyncClient, caplog) -> None:
        caplog.set_level(logging.INFO, logger="api.access")

        await client.get("/api/v1/tickets", headers={**auth_headers("requester"), "X-Correlation-ID": "abc"})

        payload = _access_records(caplog)[-1]
        assert payload["path"] == "/api/v1/tickets"
        assert payload["status_code"] == 200
        assert payload["tenant_id"] == "tenant-a"
        assert payload["user_id"] == "requester"
        assert payload["correlation_id"] == "abc"

    @pytest.mark.asyncio
    async def test_credentials_are_masked(self, client: AsyncClient, caplog) -> None:
        caplog.set_level(logging.INFO, logger="api.access")

        await client.post("/api/v1/cron/subscription-check", headers={"X-Cron-Secret": CRON_SECRET})

        headers = _access_records(caplog)[-1]["headers"]
        assert headers["x-cron-secret"] == "***"
        assert CRON_SECRET not in str(_access_records(caplog))

    @pytest.mark.asyncio
    async def test_client_errors_logged_as_warning(self, client: AsyncClient, caplog) -> None:
        caplog.set_level(logging.INFO, logger="api.access")

        await client.get("/api/v1/tickets")

        record = [r for r in caplog.records if r.name == "api.access"][-1]
        assert record.levelno == logging.WARNING
        assert record.request["tenant_id"] == "anonymous"


class TestCorrelationLoggingFilter:
    def test_empty_outside_request(self) -> None:
        record = logging.LogRecord("svc", logging.INFO, "x.py", 1, "msg", (), None)

        assert CorrelationLoggingFilter().filter(record) is True
        assert record.correlation_id == ""
        assert get_correlation_id() == ""

    @pytest.mark.asyncio
    async def test_service_logs_carry_request_id(self, client: AsyncClient, caplog) -> None:
        caplog.set_level(logging.INFO, logger="api.services")
        caplog.handler.addFilter(CorrelationLoggingFilter())

        await client.post(
            "/api/v1/tickets",
            json={"title": "Broken window", "department": "MAINTENANCE"},
            headers={**auth_headers("requester"), "X-Correlation-ID": "create-1"},
        )

        service_records = [r for r in caplog.records if r.name.startswith("api.services")]
        assert service_records
        assert all(r.correlation_id == "create-1" for r in service_records)
