"""Tests for api/api/services/paynow_client.py against an httpx.MockTransport."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
from servicedesk_core.billing.paynow import decode_form, encode_form, sign, verify_hash
from servicedesk_core.errors import ProviderError
from servicedesk_core.models.billing import PaymentStatus

from api.services.paynow_client import PaynowClient

_KEY = "integration-key"
_INIT_URL = "https://paynow.test/interface/initiatetransaction"
_POLL_URL = "https://paynow.test/interface/checkpayment/?guid=42"


def _client(handler, *, integration_id: str = "1201") -> PaynowClient:
    return PaynowClient(integration_id, _KEY, _INIT_URL, transport=httpx.MockTransport(handler))


async def _initiate(client: PaynowClient):
    return await client.initiate(
        reference="SUB-tenant-a-1700000000000",
        amount=Decimal("79"),
        description="PRO plan (monthly)",
        email="billing@acme.test",
        return_url="https://app.test/billing/return",
        result_url="https://api.test/api/v1/billing/paynow/webhook",
    )


class TestInitiate:
    @pytest.mark.asyncio
    async def test_signed_request_and_ok_reply(self) -> None:
        captured: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured.update(decode_form(request.content))
            captured["content-type"] = request.headers["content-type"]
            reply = sign({"status": "Ok", "browserurl": "https://paynow.test/pay", "pollurl": _POLL_URL}, _KEY)
            return httpx.Response(200, text=encode_form(reply))

        result = await _initiate(_client(handler))

        assert result.ok
        assert result.browser_url == "https://paynow.test/pay"
        assert result.poll_url == _POLL_URL
        assert captured["content-type"] == "application/x-www-form-urlencoded"
        assert captured["amount"] == "79.00"
        assert captured["id"] == "1201"
        assert verify_hash({k: v for k, v in captured.items() if k != "content-type"}, _KEY)

    @pytest.mark.asyncio
    async def test_error_reply_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=encode_form({"status": "Error", "error": "Invalid Id."}))

        with pytest.raises(ProviderError, match="Invalid Id"):
            await _initiate(_client(handler))

    @pytest.mark.asyncio
    async def test_unsigned_ok_reply_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=encode_form({"status": "Ok", "browserurl": "https://evil.test"}))

        with pytest.raises(ProviderError, match="hash verification"):
            await _initiate(_client(handler))

    @pytest.mark.asyncio
    async def test_http_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="Internal Server Error")

        with pytest.raises(ProviderError, match="HTTP 500"):
            await _initiate(_client(handler))

    @pytest.mark.asyncio
    async def test_connection_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError, match="unreachable"):
            await _initiate(_client(handler))

    @pytest.mark.asyncio
    async def test_unconfigured_client_never_calls_out(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        with pytest.raises(ProviderError, match="not configured"):
            await _initiate(_client(handler, integration_id=""))
        assert calls == []


class TestPoll:
    @pytest.mark.asyncio
    async def test_paid_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == _POLL_URL
            reply = sign(
                {
                    "reference": "SUB-tenant-a-1700000000000",
                    "paynowreference": "8812",
                    "amount": "79.00",
                    "status": "Paid",
                    "pollurl": _POLL_URL,
                },
                _KEY,
            )
            return httpx.Response(200, text=encode_form(reply))

        notice = await _client(handler).poll(_POLL_URL)

        assert notice.outcome == PaymentStatus.SUCCESS
        assert notice.amount == Decimal("79.00")
        assert notice.paynow_reference == "8812"

    @pytest.mark.asyncio
    async def test_tampered_reply_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            reply = sign({"reference": "SUB-tenant-a-1", "status": "Cancelled"}, _KEY)
            reply["status"] = "Paid"
            return httpx.Response(200, text=encode_form(reply))

        with pytest.raises(ProviderError, match="verification"):
            await _client(handler).poll(_POLL_URL)

    @pytest.mark.asyncio
    async def test_reply_without_status_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=encode_form(sign({"reference": "SUB-tenant-a-1"}, _KEY)))

        with pytest.raises(ProviderError, match="Unusable"):
            await _client(handler).poll(_POLL_URL)
