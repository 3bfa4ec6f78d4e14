"""Paynow result notifications.

``ingest`` turns one gateway notification into at most one effect:

1. the SHA-512 hash proves the notification came from Paynow;
2. the merchant reference identifies the tenant and the payment (a
   pending payment is created defensively if initiation never stored it);
3. a durable receipt keyed on the payload digest, plus a CAS on
   ``status != success``, make redelivery a no-op;
4. the mapped status is applied through :func:`settle_payment`, which the
   poll and bank-transfer paths share.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from servicedesk_core.billing.paynow import PaynowNotice, decode_form, parse_notice, tenant_from_reference, verify_hash
from servicedesk_core.errors import IdempotencyShortCircuit, InvalidSignature, NotFoundError, ValidationError
from servicedesk_core.models.billing import PaymentProvider, PaymentStatus
from servicedesk_core.state.repository import PaymentRepository, TenantRepository, WebhookReceiptRepository
from servicedesk_core.state.tables import PaymentTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_dispatcher import EventType, Notifier
from api.services.subscription_service import SubscriptionService, notify_tenant_admins

logger = logging.getLogger(__name__)


class SettleOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    PENDING = "pending"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def payment_to_dict(payment: PaymentTable) -> dict[str, Any]:
    return {
        "id": payment.id,
        "tenant_id": payment.tenant_id,
        "subscription_id": payment.subscription_id,
        "invoice_number": payment.invoice_number,
        "reference": payment.provider_payment_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "provider": payment.provider,
        "plan": payment.plan,
        "billing_cycle": payment.billing_cycle,
        "failure_reason": payment.failure_reason,
        "due_date": _iso(payment.due_date),
        "paid_at": _iso(payment.paid_at),
        "confirmed_by_id": payment.confirmed_by_id,
        "created_at": _iso(payment.created_at),
    }


def _notice_record(notice: PaynowNotice) -> dict[str, Any]:
    return {
        "paynow_reference": notice.paynow_reference,
        "status": notice.raw_status,
        "amount": str(notice.amount) if notice.amount is not None else None,
    }


async def settle_payment(
    session: AsyncSession,
    payment: PaymentTable,
    outcome: PaymentStatus,
    *,
    notifier: Notifier,
    reason: str | None = None,
    provider_response: dict[str, Any] | None = None,
    confirmed_by_id: str | None = None,
    grace_days: int | None = None,
) -> SettleOutcome:
    """Apply a gateway (or manual) outcome to *payment* exactly once.

    A success that loses the ``status != success`` CAS returns
    :attr:`SettleOutcome.DUPLICATE` and has no further effect.
    """
    repo = PaymentRepository(session, tenant_id=payment.tenant_id)
    if outcome == PaymentStatus.SUCCESS:
        values: dict[str, Any] = {"paid_at": datetime.now(UTC), "failure_reason": None}
        if provider_response is not None:
            values["provider_response"] = provider_response
        if confirmed_by_id is not None:
            values["confirmed_by_id"] = confirmed_by_id
        if not await repo.mark_success(payment.id, **values):
            logger.info("Payment %s already successful; skipping activation", payment.id)
            return SettleOutcome.DUPLICATE
        logger.info("Payment %s for tenant %s succeeded", payment.id, payment.tenant_id)
        kwargs: dict[str, Any] = {"tenant_id": payment.tenant_id, "notifier": notifier}
        if grace_days is not None:
            kwargs["grace_days"] = grace_days
        await SubscriptionService(session, **kwargs).activate_from_payment(payment)
        return SettleOutcome.APPLIED

    if outcome == PaymentStatus.FAILED:
        failure = reason or "Payment failed"
        extra = {"provider_response": provider_response} if provider_response is not None else {}
        if await repo.mark_failed(payment.id, failure, **extra):
            logger.info("Payment %s for tenant %s failed: %s", payment.id, payment.tenant_id, failure)
            await notify_tenant_admins(
                session,
                notifier,
                payment.tenant_id,
                EventType.PAYMENT_FAILED,
                "Payment failed",
                f"Your payment {payment.provider_payment_id} did not go through: {failure}",
                {"payment_id": payment.id},
            )
        return SettleOutcome.FAILED

    return SettleOutcome.PENDING


def payload_digest(fields: dict[str, str]) -> str:
    """Order-independent digest of a notification used as its dedupe key."""
    canonical = "&".join(f"{k.lower()}={v}" for k, v in sorted(fields.items(), key=lambda kv: kv[0].lower()))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class PaymentWebhookProcessor:
    """Processes Paynow result notifications.

    Parameters
    ----------
    session:
        Platform-scope session; the tenant comes from the payment reference.
    integration_key:
        Paynow integration key used to verify the notification hash.
    notifier:
        Staging buffer for notifications sent after commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        integration_key: str,
        *,
        notifier: Notifier | None = None,
        grace_days: int | None = None,
    ) -> None:
        self._session = session
        self._integration_key = integration_key
        self._notifier = notifier or Notifier()
        self._grace_days = grace_days

    async def ingest(self, body: bytes | str) -> dict[str, Any]:
        """Verify and apply one result notification.

        Returns
        -------
        dict
            ``{"status": "ok", "payment_id": ..., "outcome": ...}``.

        Raises
        ------
        InvalidSignature
            If the hash is missing or wrong.
        ValidationError
            If reference/status are missing or the reference is foreign.
        NotFoundError
            If the reference names an unknown tenant.
        IdempotencyShortCircuit
            If the notification (or the payment's success) was already applied.
        """
        fields = decode_form(body)
        if not verify_hash(fields, self._integration_key):
            logger.warning("Rejected Paynow notification with invalid hash (reference=%s)", fields.get("reference"))
            raise InvalidSignature("Invalid payment notification signature")
        notice = parse_notice(fields)
        tenant_id = tenant_from_reference(notice.reference)

        payment = await self._resolve_payment(notice, tenant_id)
        if payment.status == PaymentStatus.SUCCESS.value:
            raise IdempotencyShortCircuit("Payment already processed")

        receipts = WebhookReceiptRepository(self._session)
        if not await receipts.record(PaymentProvider.PAYNOW.value, payload_digest(fields), payment.id):
            logger.info("Duplicate Paynow notification for %s ignored", notice.reference)
            raise IdempotencyShortCircuit("Notification already processed")

        if notice.amount is not None and notice.amount != payment.amount:
            logger.warning(
                "Paynow amount %s differs from stored amount %s for %s",
                notice.amount,
                payment.amount,
                notice.reference,
            )
        outcome = await settle_payment(
            self._session,
            payment,
            notice.outcome,
            notifier=self._notifier,
            reason=f"Paynow status: {notice.raw_status}",
            provider_response=_notice_record(notice),
            grace_days=self._grace_days,
        )
        if outcome == SettleOutcome.DUPLICATE:
            raise IdempotencyShortCircuit("Payment already processed")
        return {"status": "ok", "payment_id": payment.id, "outcome": outcome.value}

    async def _resolve_payment(self, notice: PaynowNotice, tenant_id: str) -> PaymentTable:
        repo = PaymentRepository(self._session, tenant_id=tenant_id)
        payment = await repo.get_by_reference(notice.reference)
        if payment is not None:
            if payment.tenant_id != tenant_id:
                logger.warning(
                    "Paynow reference %s names tenant %s but payment belongs to %s",
                    notice.reference,
                    tenant_id,
                    payment.tenant_id,
                )
                raise ValidationError("Payment reference does not match its tenant")
            return payment

        if await TenantRepository(self._session).get(tenant_id) is None:
            raise NotFoundError("Unknown tenant in payment reference")
        created = await repo.ensure(
            notice.reference,
            amount=notice.amount if notice.amount is not None else Decimal("0.00"),
            provider=PaymentProvider.PAYNOW.value,
            poll_url=notice.poll_url,
        )
        if created:
            logger.warning("Created missing payment record for Paynow reference %s", notice.reference)
        payment = await repo.get_by_reference(notice.reference)
        if payment is None:
            raise NotFoundError("Payment record could not be created")
        return payment
