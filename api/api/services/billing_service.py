"""Subscription billing: Paynow checkout, status polling and bank transfers.

Provides tenant-scoped payment initiation and polling, and the
platform-scope confirmation of offline bank transfers.  Every path that
settles a payment goes through
:func:`api.services.payment_webhook_service.settle_payment`, so a payment
confirmed by webhook, poll and manual confirmation is applied once.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from servicedesk_core.billing.paynow import build_reference
from servicedesk_core.billing.subscription_rules import price_for
from servicedesk_core.errors import AuthzError, ConflictError, NotFoundError, ValidationError
from servicedesk_core.models.billing import BillingCycle, PaymentProvider, PaymentStatus, SubscriptionPlan
from servicedesk_core.state.repository import PaymentRepository, SubscriptionRepository, TenantRepository
from servicedesk_core.state.tables import PaymentTable
from servicedesk_core.workflow.roles import Actor
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.services.notification_dispatcher import Notifier
from api.services.payment_webhook_service import SettleOutcome, payment_to_dict, settle_payment
from api.services.paynow_client import PaynowClient

logger = logging.getLogger(__name__)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class BillingService:
    """Subscription payments for a single tenant.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings carrying the Paynow and bank-transfer configuration.
    tenant_id:
        The tenant paying for its subscription.
    notifier:
        Staging buffer for notifications sent after commit.
    client:
        Paynow client; built from *settings* when omitted.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
        notifier: Notifier | None = None,
        client: PaynowClient | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._notifier = notifier or Notifier()
        self._client = client or PaynowClient.from_settings(settings)
        self._payments = PaymentRepository(session, tenant_id=tenant_id)

    async def initiate_subscription_payment(
        self,
        plan: SubscriptionPlan,
        billing_cycle: BillingCycle,
        email: str,
    ) -> dict[str, Any]:
        """Start a Paynow checkout for *plan* and store it as a pending payment.

        The gateway is called before anything is written, so a
        :class:`~servicedesk_core.errors.ProviderError` leaves no payment row.

        Returns
        -------
        dict
            ``payment_id``, ``reference``, ``redirect_url``, ``poll_url``,
            ``amount`` and ``invoice_number``.
        """
        if not (email or "").strip():
            raise ValidationError("A payer email address is required")
        now = datetime.now(UTC)
        amount = price_for(plan, billing_cycle)
        reference = build_reference(self._tenant_id, _epoch_ms())
        init = await self._client.initiate(
            reference=reference,
            amount=amount,
            description=f"{plan.value} plan ({billing_cycle.value})",
            email=email.strip(),
            return_url=self._settings.paynow_return_url,
            result_url=self._settings.paynow_result_url,
        )
        payment = await self._payments.create(
            subscription_id=await self._subscription_id(),
            invoice_number=await self._next_invoice_number(now),
            amount=amount,
            status=PaymentStatus.PENDING.value,
            provider=PaymentProvider.PAYNOW.value,
            provider_payment_id=reference,
            poll_url=init.poll_url,
            plan=plan.value,
            billing_cycle=billing_cycle.value,
            due_date=now + timedelta(days=self._settings.payment_due_days),
        )
        logger.info(
            "Paynow payment %s initiated for tenant %s: %s %s",
            payment.id,
            self._tenant_id,
            plan.value,
            billing_cycle.value,
        )
        return {
            "payment_id": payment.id,
            "reference": reference,
            "redirect_url": init.browser_url,
            "poll_url": init.poll_url,
            "amount": str(amount),
            "invoice_number": payment.invoice_number,
        }

    async def poll_status(self, payment_id: str) -> dict[str, Any]:
        """Return the payment, asking the gateway first while it is pending.

        ``pending`` is a normal, repeatable result.  A gateway failure
        raises :class:`~servicedesk_core.errors.ProviderError` and leaves the
        payment untouched.
        """
        payment = await self._load(payment_id)
        if payment.status != PaymentStatus.PENDING.value or not payment.poll_url:
            return payment_to_dict(payment)

        notice = await self._client.poll(payment.poll_url)
        outcome = await settle_payment(
            self._session,
            payment,
            notice.outcome,
            notifier=self._notifier,
            reason=f"Paynow status: {notice.raw_status}",
            provider_response={"paynow_reference": notice.paynow_reference, "status": notice.raw_status},
            grace_days=self._settings.grace_period_days,
        )
        if outcome != SettleOutcome.PENDING:
            logger.info("Poll of payment %s resolved it as %s", payment.id, outcome.value)
        return payment_to_dict(await self._load(payment.id))

    async def create_bank_transfer_request(self, plan: SubscriptionPlan, billing_cycle: BillingCycle) -> dict[str, Any]:
        """Register an offline payment and return the transfer instructions."""
        now = datetime.now(UTC)
        amount = price_for(plan, billing_cycle)
        reference = build_reference(self._tenant_id, _epoch_ms())
        payment = await self._payments.create(
            subscription_id=await self._subscription_id(),
            invoice_number=await self._next_invoice_number(now),
            amount=amount,
            status=PaymentStatus.PENDING.value,
            provider=PaymentProvider.BANK_TRANSFER.value,
            provider_payment_id=reference,
            plan=plan.value,
            billing_cycle=billing_cycle.value,
            due_date=now + timedelta(days=self._settings.payment_due_days),
        )
        logger.info("Bank transfer %s requested by tenant %s", payment.id, self._tenant_id)
        return {
            "payment": payment_to_dict(payment),
            "reference": reference,
            "bank_details": {
                "bank_name": self._settings.bank_name,
                "account_name": self._settings.bank_account_name,
                "account_number": self._settings.bank_account_number,
                "branch": self._settings.bank_branch,
                "swift_code": self._settings.bank_swift_code,
                "reference": reference,
                "amount": str(amount),
            },
        }

    async def list_payments(self, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return [payment_to_dict(p) for p in await self._payments.list_payments(limit=limit, offset=offset)]

    async def _load(self, payment_id: str) -> PaymentTable:
        payment = await self._payments.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def _subscription_id(self) -> str | None:
        sub = await SubscriptionRepository(self._session, tenant_id=self._tenant_id).get()
        return sub.id if sub is not None else None

    async def _next_invoice_number(self, now: datetime) -> str:
        tenant = await TenantRepository(self._session).get(self._tenant_id)
        slug = tenant.slug if tenant is not None else self._tenant_id
        return await self._payments.next_invoice_number(slug, now)


class PlatformBillingService:
    """Platform-scope billing operations for super administrators."""

    def __init__(self, session: AsyncSession, *, notifier: Notifier | None = None, grace_days: int | None = None):
        self._session = session
        self._notifier = notifier or Notifier()
        self._grace_days = grace_days
        self._payments = PaymentRepository(session)

    async def list_pending_bank_transfers(self, actor: Actor) -> list[dict[str, Any]]:
        _require_super_admin(actor)
        return [payment_to_dict(p) for p in await self._payments.list_pending_bank_transfers()]

    async def confirm_bank_transfer(self, payment_id: str, actor: Actor) -> dict[str, Any]:
        """Mark a bank transfer as received and activate the subscription.

        Raises
        ------
        AuthzError
            If *actor* is not a super administrator.
        NotFoundError
            If the payment does not exist.
        ValidationError
            If the payment is not a bank transfer.
        ConflictError
            If the payment was already confirmed.
        """
        _require_super_admin(actor)
        payment = await self._payments.get_any_tenant(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.provider != PaymentProvider.BANK_TRANSFER.value:
            raise ValidationError("Only bank transfer payments can be confirmed manually")
        if payment.status == PaymentStatus.SUCCESS.value:
            raise ConflictError("Payment has already been confirmed")

        outcome = await settle_payment(
            self._session,
            payment,
            PaymentStatus.SUCCESS,
            notifier=self._notifier,
            confirmed_by_id=actor.user_id,
            grace_days=self._grace_days,
        )
        if outcome == SettleOutcome.DUPLICATE:
            raise ConflictError("Payment has already been confirmed")
        logger.info("Bank transfer %s of tenant %s confirmed by %s", payment.id, payment.tenant_id, actor.user_id)
        refreshed = await self._payments.get_any_tenant(payment.id)
        return payment_to_dict(refreshed or payment)


def _require_super_admin(actor: Actor) -> None:
    if not actor.is_super_admin:
        raise AuthzError("Only platform administrators can manage bank transfers")
