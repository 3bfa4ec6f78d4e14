"""HTTP client for the Paynow payment gateway."""

from __future__ import annotations

import logging
from decimal import Decimal

import httpx
from servicedesk_core.billing.paynow import (
    InitResponse,
    PaynowNotice,
    build_init_request,
    decode_form,
    encode_form,
    parse_init_response,
    parse_notice,
    verify_hash,
)
from servicedesk_core.errors import InvalidSignature, ProviderError, ValidationError

from api.config import APISettings
from api.middleware.logging import get_correlation_id

logger = logging.getLogger(__name__)

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class PaynowClient:
    """Thin async wrapper around the Paynow initiate and poll endpoints.

    Unlike a best-effort client, every failure is raised as
    :class:`ProviderError` so that the caller leaves the payment pending.

    Parameters
    ----------
    integration_id:
        Merchant integration id.
    integration_key:
        Shared secret used to sign requests and verify replies.
    init_url:
        ``initiatetransaction`` endpoint.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (tests inject a ``MockTransport``).
    """

    def __init__(
        self,
        integration_id: str,
        integration_key: str,
        init_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._integration_id = integration_id
        self._integration_key = integration_key
        self._init_url = init_url
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: APISettings) -> PaynowClient:
        return cls(
            settings.paynow_integration_id,
            settings.paynow_integration_key.get_secret_value(),
            settings.paynow_init_url,
            timeout=settings.paynow_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self._integration_id and self._integration_key)

    async def initiate(
        self,
        *,
        reference: str,
        amount: Decimal,
        description: str,
        email: str,
        return_url: str,
        result_url: str,
    ) -> InitResponse:
        """Start a web transaction and return the redirect and poll URLs.

        Raises
        ------
        ProviderError
            If the gateway is not configured, unreachable, or refuses the
            transaction.
        """
        if not self.configured:
            raise ProviderError("Payment gateway is not configured")
        fields = build_init_request(
            integration_id=self._integration_id,
            integration_key=self._integration_key,
            reference=reference,
            amount=amount,
            description=description,
            email=email,
            return_url=return_url,
            result_url=result_url,
        )
        reply = await self._post(self._init_url, encode_form(fields))
        result = parse_init_response(reply, self._integration_key)
        if not result.ok:
            logger.warning("Paynow refused transaction %s: %s", reference, result.error)
            raise ProviderError(f"Payment gateway rejected the transaction: {result.error}")
        logger.info("Paynow transaction %s initiated", reference)
        return result

    async def poll(self, poll_url: str) -> PaynowNotice:
        """Fetch the current transaction status from *poll_url*.

        Raises
        ------
        ProviderError
            If the gateway is unreachable or the reply is unusable.
        """
        reply = await self._post(poll_url, "")
        if not verify_hash(reply, self._integration_key):
            logger.warning("Paynow poll reply from %s failed hash verification", poll_url)
            raise ProviderError("Payment gateway reply failed verification")
        try:
            return parse_notice(reply)
        except (ValidationError, InvalidSignature) as exc:
            raise ProviderError(f"Unusable payment gateway reply: {exc.message}")

    async def _post(self, url: str, body: str) -> dict[str, str]:
        headers = dict(_FORM_HEADERS)
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
                response = await client.post(url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Paynow returned %d for %s: %s",
                exc.response.status_code,
                url,
                exc.response.text[:500],
            )
            raise ProviderError(f"Payment gateway returned HTTP {exc.response.status_code}")
        except httpx.RequestError as exc:
            logger.warning("Paynow request to %s failed: %s", url, str(exc))
            raise ProviderError("Payment gateway is unreachable")
        return decode_form(response.text)
