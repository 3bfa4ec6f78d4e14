"""Paynow message codec.

Paynow exchanges ``application/x-www-form-urlencoded`` messages.  Every
message carries a ``hash`` field: the uppercase hex SHA-512 of all other
field values concatenated in transmission order, followed by the
merchant's integration key.

Merchant references embed the tenant so a result notification can be
routed without trusting any client-supplied identifier::

    SUB-{tenant_id}-{epoch_ms}       subscription payments
    TENANT-{tenant_id}-{epoch_ms}    one-off payments
"""

from __future__ import annotations

import hashlib
import hmac
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl, urlencode

from servicedesk_core.errors import ValidationError
from servicedesk_core.models.billing import PaymentStatus

_REFERENCE_RE = re.compile(r"^(SUB|TENANT)-(.+)-(\d+)$")

SUCCESS_STATUSES: frozenset[str] = frozenset({"paid", "awaiting delivery", "delivered"})
FAILURE_STATUSES: frozenset[str] = frozenset({"cancelled", "failed", "disputed", "refunded", "error"})


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def compute_hash(fields: Mapping[str, str], integration_key: str) -> str:
    """Return the Paynow hash for *fields* (any ``hash`` key is skipped)."""
    concatenated = "".join(str(value) for key, value in fields.items() if key.lower() != "hash")
    return hashlib.sha512((concatenated + integration_key).encode("utf-8")).hexdigest().upper()


def verify_hash(fields: Mapping[str, str], integration_key: str) -> bool:
    """Constant-time check of the ``hash`` field carried by *fields*."""
    received = next((str(v) for k, v in fields.items() if k.lower() == "hash"), "")
    if not received or not integration_key:
        return False
    return hmac.compare_digest(compute_hash(fields, integration_key), received.upper())


def sign(fields: Mapping[str, str], integration_key: str) -> dict[str, str]:
    """Return a copy of *fields* with the ``hash`` field appended."""
    signed = {k: str(v) for k, v in fields.items() if k.lower() != "hash"}
    signed["hash"] = compute_hash(signed, integration_key)
    return signed


def decode_form(body: bytes | str) -> dict[str, str]:
    """Decode a form-encoded body, preserving field order."""
    text = body.decode("utf-8") if isinstance(body, bytes) else body
    return dict(parse_qsl(text, keep_blank_values=True))


def encode_form(fields: Mapping[str, str]) -> str:
    return urlencode(list(fields.items()))


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


def build_reference(tenant_id: str, epoch_ms: int, *, subscription: bool = True) -> str:
    prefix = "SUB" if subscription else "TENANT"
    return f"{prefix}-{tenant_id}-{epoch_ms}"


def tenant_from_reference(reference: str) -> str:
    """Extract the tenant id embedded in a merchant reference.

    Raises :class:`ValidationError` if the reference is not one we issued.
    """
    match = _REFERENCE_RE.match(reference.strip())
    if not match:
        raise ValidationError(f"Unrecognised payment reference: {reference!r}")
    return match.group(2)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def map_status(raw_status: str) -> PaymentStatus:
    """Map a Paynow transaction status onto the local payment status.

    Anything that is neither settled nor terminally failed is treated as
    still pending; the next notification or poll will resolve it.
    """
    normalised = raw_status.strip().lower()
    if normalised in SUCCESS_STATUSES:
        return PaymentStatus.SUCCESS
    if normalised in FAILURE_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


@dataclass(frozen=True)
class PaynowNotice:
    """A verified status notification (webhook body or poll response)."""

    reference: str
    paynow_reference: str | None
    amount: Decimal | None
    raw_status: str
    outcome: PaymentStatus
    poll_url: str | None


def parse_notice(fields: Mapping[str, str]) -> PaynowNotice:
    """Build a :class:`PaynowNotice` from decoded fields.

    Raises :class:`ValidationError` when ``reference`` or ``status`` is
    missing or ``amount`` is not a number.
    """
    lowered = {k.lower(): v for k, v in fields.items()}
    reference = (lowered.get("reference") or "").strip()
    raw_status = (lowered.get("status") or "").strip()
    if not reference or not raw_status:
        raise ValidationError("Payment notification must include reference and status")

    amount: Decimal | None = None
    if lowered.get("amount"):
        try:
            amount = Decimal(lowered["amount"])
        except InvalidOperation:
            raise ValidationError(f"Invalid amount in payment notification: {lowered['amount']!r}")

    return PaynowNotice(
        reference=reference,
        paynow_reference=lowered.get("paynowreference") or None,
        amount=amount,
        raw_status=raw_status,
        outcome=map_status(raw_status),
        poll_url=lowered.get("pollurl") or None,
    )


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


def build_init_request(
    *,
    integration_id: str,
    integration_key: str,
    reference: str,
    amount: Decimal,
    description: str,
    email: str,
    return_url: str,
    result_url: str,
) -> dict[str, str]:
    """Return the signed field set for an ``initiatetransaction`` call."""
    fields = {
        "id": integration_id,
        "reference": reference,
        "amount": f"{amount:.2f}",
        "additionalinfo": description,
        "returnurl": return_url,
        "resulturl": result_url,
        "authemail": email,
        "status": "Message",
    }
    return sign(fields, integration_key)


@dataclass(frozen=True)
class InitResponse:
    ok: bool
    browser_url: str | None = None
    poll_url: str | None = None
    error: str | None = None


def parse_init_response(fields: Mapping[str, str], integration_key: str) -> InitResponse:
    """Interpret the gateway's reply to ``initiatetransaction``.

    A successful reply must carry a valid hash; error replies are unsigned.
    """
    lowered = {k.lower(): v for k, v in fields.items()}
    status = (lowered.get("status") or "").strip().lower()
    if status != "ok":
        return InitResponse(ok=False, error=lowered.get("error") or "Payment initiation rejected")
    if not verify_hash(fields, integration_key):
        return InitResponse(ok=False, error="Gateway response failed hash verification")
    return InitResponse(ok=True, browser_url=lowered.get("browserurl"), poll_url=lowered.get("pollurl"))
