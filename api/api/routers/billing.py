"""Billing endpoints: plans, Paynow checkout and webhook, bank transfers, subscription."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from servicedesk_core.billing.subscription_rules import PLAN_PRICING
from servicedesk_core.models.billing import BillingCycle, SubscriptionPlan
from servicedesk_core.workflow.roles import PlatformRole
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.dependencies import (
    ActorDep,
    AdminSessionDep,
    NotifierDep,
    PublicSessionDep,
    SessionDep,
    SettingsDep,
    TenantDep,
)
from api.middleware.rbac import Permission, require_permission
from api.schemas import (
    BankTransferResponse,
    InitiatePaymentResponse,
    PaymentResponse,
    SubscriptionResponse,
    WebhookAckResponse,
)
from api.services.billing_service import BillingService, PlatformBillingService
from api.services.notification_dispatcher import Notifier
from api.services.payment_webhook_service import PaymentWebhookProcessor
from api.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# Billing stays reachable whatever the subscription state, so no access gate here.
router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class InitiatePaymentRequest(BaseModel):
    """Request body for ``POST /billing/paynow/initiate``."""

    plan: SubscriptionPlan
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    email: str = Field(..., min_length=3, max_length=320, description="Payer email sent to Paynow.")


class BankTransferRequest(BaseModel):
    plan: SubscriptionPlan
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class TrialRequest(BaseModel):
    plan: SubscriptionPlan = SubscriptionPlan.BASIC
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class SubscriptionAdminRequest(BaseModel):
    """Request body for the platform-administration subscription endpoints."""

    tenant_id: str = Field(..., min_length=1)
    reason: str | None = Field(default=None, max_length=4000)


class BillingPlan(BaseModel):
    plan: str
    monthly_price: str
    yearly_price: str


class BillingPlansResponse(BaseModel):
    """Response for ``GET /billing/plans``."""

    currency: str = "USD"
    plans: list[BillingPlan]


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=BillingPlansResponse)
async def get_billing_plans() -> BillingPlansResponse:
    """Return the available plans with their list prices."""
    return BillingPlansResponse(
        plans=[
            BillingPlan(
                plan=plan.value,
                monthly_price=str(prices[BillingCycle.MONTHLY]),
                yearly_price=str(prices[BillingCycle.YEARLY]),
            )
            for plan, prices in PLAN_PRICING.items()
        ]
    )


# ---------------------------------------------------------------------------
# Paynow
# ---------------------------------------------------------------------------


@router.post("/paynow/webhook", response_model=WebhookAckResponse)
async def paynow_webhook(
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
    notifier: NotifierDep,
) -> dict[str, Any]:
    """Handle Paynow result notifications.

    Authenticated by the notification's SHA-512 hash instead of a bearer
    token.  Valid notifications (including redeliveries) get 200; a bad
    hash or missing fields get 400.
    """
    body = await request.body()
    processor = PaymentWebhookProcessor(
        session,
        settings.paynow_integration_key.get_secret_value(),
        notifier=notifier,
        grace_days=settings.grace_period_days,
    )
    return await processor.ingest(body)


@router.post("/paynow/initiate", response_model=InitiatePaymentResponse, status_code=201)
async def initiate_payment(
    body: InitiatePaymentRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Start a Paynow checkout; the client redirects to ``redirect_url``."""
    service = BillingService(session, settings, tenant_id=tenant_id, notifier=notifier)
    return await service.initiate_subscription_payment(body.plan, body.billing_cycle, body.email)


@router.get("/payments", response_model=list[PaymentResponse])
async def list_payments(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _role: PlatformRole = Depends(require_permission(Permission.VIEW_BILLING)),
) -> list[dict[str, Any]]:
    service = BillingService(session, settings, tenant_id=tenant_id)
    return await service.list_payments(limit=limit, offset=offset)


@router.get("/payments/{payment_id}/status", response_model=PaymentResponse)
async def poll_payment_status(
    payment_id: str,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.VIEW_BILLING)),
) -> dict[str, Any]:
    """Return the payment, polling Paynow while it is still pending."""
    service = BillingService(session, settings, tenant_id=tenant_id, notifier=notifier)
    return await service.poll_status(payment_id)


# ---------------------------------------------------------------------------
# Bank transfers
# ---------------------------------------------------------------------------


@router.post("/bank-transfer", response_model=BankTransferResponse, status_code=201)
async def create_bank_transfer(
    body: BankTransferRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    service = BillingService(session, settings, tenant_id=tenant_id)
    return await service.create_bank_transfer_request(body.plan, body.billing_cycle)


@router.get("/bank-transfers/pending", response_model=list[PaymentResponse])
async def list_pending_bank_transfers(
    session: AdminSessionDep,
    actor: ActorDep,
    _role: PlatformRole = Depends(require_permission(Permission.ADMINISTER_PLATFORM)),
) -> list[dict[str, Any]]:
    """Pending bank transfers across all tenants, oldest first."""
    return await PlatformBillingService(session).list_pending_bank_transfers(actor)


@router.post("/payments/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_bank_transfer(
    payment_id: str,
    session: AdminSessionDep,
    settings: SettingsDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.ADMINISTER_PLATFORM)),
) -> dict[str, Any]:
    """Confirm receipt of a bank transfer and activate the tenant's subscription."""
    service = PlatformBillingService(session, notifier=notifier, grace_days=settings.grace_period_days)
    return await service.confirm_bank_transfer(payment_id, actor)


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: PlatformRole = Depends(require_permission(Permission.VIEW_BILLING)),
) -> dict[str, Any]:
    """Return the tenant's subscription and its current access level."""
    return await SubscriptionService(session, tenant_id=tenant_id).get_subscription()


@router.post("/subscription/trial", response_model=SubscriptionResponse, status_code=201)
async def start_trial(
    body: TrialRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    _role: PlatformRole = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    service = SubscriptionService(
        session,
        tenant_id=tenant_id,
        trial_days=settings.trial_days,
        grace_days=settings.grace_period_days,
    )
    return await service.create_trial(body.plan, body.billing_cycle)


def _platform_subscription_service(
    session: AsyncSession, settings: APISettings, notifier: Notifier, tenant_id: str
) -> SubscriptionService:
    return SubscriptionService(
        session,
        tenant_id=tenant_id,
        notifier=notifier,
        trial_days=settings.trial_days,
        grace_days=settings.grace_period_days,
    )


@router.post("/subscription/suspend", response_model=SubscriptionResponse)
async def suspend_subscription(
    body: SubscriptionAdminRequest,
    session: AdminSessionDep,
    settings: SettingsDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.ADMINISTER_PLATFORM)),
) -> dict[str, Any]:
    service = _platform_subscription_service(session, settings, notifier, body.tenant_id)
    return await service.suspend(actor, body.reason or "")


@router.post("/subscription/reinstate", response_model=SubscriptionResponse)
async def reinstate_subscription(
    body: SubscriptionAdminRequest,
    session: AdminSessionDep,
    settings: SettingsDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.ADMINISTER_PLATFORM)),
) -> dict[str, Any]:
    service = _platform_subscription_service(session, settings, notifier, body.tenant_id)
    return await service.reinstate(actor)


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    body: SubscriptionAdminRequest,
    session: AdminSessionDep,
    settings: SettingsDep,
    actor: ActorDep,
    notifier: NotifierDep,
    _role: PlatformRole = Depends(require_permission(Permission.ADMINISTER_PLATFORM)),
) -> dict[str, Any]:
    service = _platform_subscription_service(session, settings, notifier, body.tenant_id)
    return await service.cancel(actor)
