"""Tenant subscription state machine.

Applies the pure rules in :mod:`servicedesk_core.billing.subscription_rules`
with compare-and-swap status updates, so the daily check and payment
recovery can run repeatedly and concurrently without double-applying::

    TRIAL / ACTIVE --period over--> GRACE --grace over--> READ_ONLY
    TRIAL / ACTIVE / GRACE / READ_ONLY --payment--> ACTIVE
    * --suspend--> SUSPENDED    * --cancel--> CANCELLED
    SUSPENDED / CANCELLED --reinstate--> ACTIVE | GRACE
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from servicedesk_core.billing.subscription_rules import (
    ADMINISTRATIVE_STATUSES,
    GRACE_PERIOD_DAYS,
    TRIAL_PERIOD_DAYS,
    SubscriptionAccess,
    SubscriptionSnapshot,
    access_for,
    can_recover,
    degradation_target,
    grace_deadline,
    renewal_period,
    trial_period,
)
from servicedesk_core.errors import AuthzError, ConflictError, NotFoundError, StateError
from servicedesk_core.models.billing import BillingCycle, SubscriptionPlan, SubscriptionStatus
from servicedesk_core.state.repository import PaymentRepository, SubscriptionRepository, UserRepository
from servicedesk_core.state.tables import PaymentTable, SubscriptionTable
from servicedesk_core.workflow.roles import Actor, PlatformRole
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_dispatcher import EventType, Notifier

logger = logging.getLogger(__name__)

# Attempts at a status CAS before giving up on a concurrently changing row.
_CAS_ATTEMPTS = 3


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def snapshot_of(sub: SubscriptionTable) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        status=SubscriptionStatus(sub.status),
        trial_ends_at=sub.trial_ends_at,
        current_period_end=sub.current_period_end,
        grace_period_end=sub.grace_period_end,
    )


def subscription_to_dict(sub: SubscriptionTable, access: SubscriptionAccess | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "id": sub.id,
        "tenant_id": sub.tenant_id,
        "plan": sub.plan,
        "billing_cycle": sub.billing_cycle,
        "status": sub.status,
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "grace_period_end": _iso(sub.grace_period_end),
        "trial_ends_at": _iso(sub.trial_ends_at),
        "suspended_reason": sub.suspended_reason,
    }
    if access is not None:
        result["access_level"] = access.level.value
        result["message"] = access.message
        result["days_remaining"] = access.days_remaining
    return result


async def notify_tenant_admins(
    session: AsyncSession,
    notifier: Notifier,
    tenant_id: str,
    event: EventType,
    title: str,
    message: str,
    data: dict[str, Any],
) -> None:
    admins = await UserRepository(session, tenant_id=tenant_id).list_by_roles([PlatformRole.TENANT_ADMIN.value])
    notifier.notify(
        event,
        tenant_id=tenant_id,
        recipient_ids=[a.id for a in admins],
        title=title,
        message=message,
        data=data,
    )


class SubscriptionService:
    """Subscription lifecycle operations for a single tenant.

    Parameters
    ----------
    session:
        Active database session.
    tenant_id:
        The tenant owning the subscription.
    notifier:
        Staging buffer for notifications sent after commit.
    trial_days, grace_days:
        Lifecycle windows (``API_TRIAL_DAYS`` / ``API_GRACE_PERIOD_DAYS``).
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        notifier: Notifier | None = None,
        trial_days: int = TRIAL_PERIOD_DAYS,
        grace_days: int = GRACE_PERIOD_DAYS,
    ) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._notifier = notifier or Notifier()
        self._trial_days = trial_days
        self._grace_days = grace_days
        self._repo = SubscriptionRepository(session, tenant_id=tenant_id)

    async def get_access(self, now: datetime | None = None) -> SubscriptionAccess:
        sub = await self._repo.get()
        return access_for(snapshot_of(sub) if sub is not None else None, now or datetime.now(UTC))

    async def get_subscription(self) -> dict[str, Any]:
        sub = await self._repo.get()
        if sub is None:
            raise NotFoundError("No subscription found for this organisation")
        return subscription_to_dict(sub, access_for(snapshot_of(sub), datetime.now(UTC)))

    async def create_trial(
        self,
        plan: SubscriptionPlan = SubscriptionPlan.BASIC,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Start a trial for a tenant that has no subscription yet.

        Raises
        ------
        ConflictError
            If the tenant already has a subscription.
        """
        now = now or datetime.now(UTC)
        period = trial_period(now, trial_days=self._trial_days, grace_days=self._grace_days)
        created = await self._repo.create(
            plan=plan.value,
            billing_cycle=billing_cycle.value,
            status=SubscriptionStatus.TRIAL.value,
            current_period_start=period.start,
            current_period_end=period.end,
            trial_ends_at=period.end,
            grace_period_end=period.grace_end,
        )
        if not created:
            raise ConflictError("This organisation already has a subscription")
        logger.info("Trial started for tenant %s (plan=%s, ends %s)", self._tenant_id, plan.value, period.end)
        return await self.get_subscription()

    async def activate_from_payment(self, payment: PaymentTable, *, now: datetime | None = None) -> bool:
        """Activate or extend the subscription after a successful payment.

        Returns ``False`` when the subscription is in an administrative state
        (``SUSPENDED`` / ``CANCELLED``) and was left untouched.
        """
        now = now or datetime.now(UTC)
        for _ in range(_CAS_ATTEMPTS):
            sub = await self._repo.get()
            cycle = BillingCycle(payment.billing_cycle or (sub.billing_cycle if sub else BillingCycle.MONTHLY.value))
            plan = payment.plan or (sub.plan if sub else SubscriptionPlan.BASIC.value)

            if sub is None:
                period = renewal_period(
                    SubscriptionSnapshot(status=SubscriptionStatus.TRIAL), now, cycle, grace_days=self._grace_days
                )
                created = await self._repo.create(
                    plan=plan,
                    billing_cycle=cycle.value,
                    status=SubscriptionStatus.ACTIVE.value,
                    current_period_start=period.start,
                    current_period_end=period.end,
                    grace_period_end=period.grace_end,
                )
                if created:
                    await self._link_payment(payment)
                    self._log_activation(None, period.end)
                    return True
                continue

            snapshot = snapshot_of(sub)
            if not can_recover(snapshot.status):
                logger.warning(
                    "Payment %s received for tenant %s with %s subscription; not reactivated",
                    payment.id,
                    self._tenant_id,
                    snapshot.status.value,
                )
                return False

            period = renewal_period(snapshot, now, cycle, grace_days=self._grace_days)
            changed = await self._repo.change_status(
                sub.id,
                from_status=snapshot.status,
                to_status=SubscriptionStatus.ACTIVE,
                plan=plan,
                billing_cycle=cycle.value,
                current_period_start=period.start,
                current_period_end=period.end,
                grace_period_end=period.grace_end,
                suspended_reason=None,
            )
            if changed:
                await self._link_payment(payment)
                self._log_activation(snapshot.status, period.end)
                await notify_tenant_admins(
                    self._session,
                    self._notifier,
                    self._tenant_id,
                    EventType.SUBSCRIPTION_ACTIVATED,
                    "Subscription active",
                    f"Payment received. Your {plan} subscription is active until {period.end:%Y-%m-%d}.",
                    {"subscription_id": sub.id, "payment_id": payment.id},
                )
                return True
        raise ConflictError("Subscription changed concurrently; the payment will be applied on retry")

    async def suspend(self, actor: Actor, reason: str) -> dict[str, Any]:
        _require_super_admin(actor)
        reason = (reason or "").strip() or "Suspended by platform administrator"
        return await self._administer(SubscriptionStatus.SUSPENDED, actor, suspended_reason=reason)

    async def cancel(self, actor: Actor) -> dict[str, Any]:
        _require_super_admin(actor)
        return await self._administer(SubscriptionStatus.CANCELLED, actor)

    async def reinstate(self, actor: Actor, *, now: datetime | None = None) -> dict[str, Any]:
        """Lift a suspension or cancellation.

        The subscription resumes as ``ACTIVE`` while its paid period lasts,
        otherwise it re-enters ``GRACE`` with a fresh grace window.
        """
        _require_super_admin(actor)
        now = now or datetime.now(UTC)
        sub = await self._load()
        status = SubscriptionStatus(sub.status)
        if status not in ADMINISTRATIVE_STATUSES:
            raise StateError(f"Only suspended or cancelled subscriptions can be reinstated; this one is {status.value}")
        if sub.current_period_end is not None and sub.current_period_end > now:
            target = SubscriptionStatus.ACTIVE
            values: dict[str, Any] = {}
        else:
            target = SubscriptionStatus.GRACE
            values = {"grace_period_end": grace_deadline(snapshot_of(sub), now, grace_days=self._grace_days)}
        return await self._administer(target, actor, expected=status, suspended_reason=None, **values)

    async def _administer(
        self,
        target: SubscriptionStatus,
        actor: Actor,
        *,
        expected: SubscriptionStatus | None = None,
        **values: Any,
    ) -> dict[str, Any]:
        sub = await self._load()
        current = SubscriptionStatus(sub.status)
        if expected is None and current == target:
            raise StateError(f"Subscription is already {target.value}")
        changed = await self._repo.change_status(sub.id, from_status=expected or current, to_status=target, **values)
        if not changed:
            raise ConflictError("Subscription changed concurrently; reload and retry")
        logger.info(
            "Subscription of tenant %s moved %s -> %s by %s",
            self._tenant_id,
            current.value,
            target.value,
            actor.user_id,
        )
        await notify_tenant_admins(
            self._session,
            self._notifier,
            self._tenant_id,
            EventType.SUBSCRIPTION_CHANGED,
            "Subscription status changed",
            f"Your subscription is now {target.value}.",
            {"subscription_id": sub.id, "from_status": current.value, "to_status": target.value},
        )
        return await self.get_subscription()

    async def _load(self) -> SubscriptionTable:
        sub = await self._repo.get()
        if sub is None:
            raise NotFoundError("No subscription found for this organisation")
        return sub

    async def _link_payment(self, payment: PaymentTable) -> None:
        sub = await self._repo.get()
        if sub is not None and payment.subscription_id != sub.id:
            payment.subscription_id = sub.id
            await self._session.flush()

    def _log_activation(self, previous: SubscriptionStatus | None, period_end: datetime) -> None:
        logger.info(
            "Subscription of tenant %s activated from %s until %s",
            self._tenant_id,
            previous.value if previous else "none",
            period_end,
        )


def _require_super_admin(actor: Actor) -> None:
    if not actor.is_super_admin:
        raise AuthzError("Only platform administrators can change subscription status")


async def run_daily_check(
    session: AsyncSession,
    *,
    notifier: Notifier | None = None,
    now: datetime | None = None,
    grace_days: int = GRACE_PERIOD_DAYS,
) -> dict[str, int]:
    """Degrade expired subscriptions and fail overdue payments, across tenants.

    Every change is a CAS on the current status, so a second run with the
    same *now* changes nothing.

    Returns
    -------
    dict
        ``{"overdue_payments": n, "to_grace": n, "to_read_only": n}``.
    """
    now = now or datetime.now(UTC)
    notifier = notifier or Notifier()
    overdue = await PaymentRepository(session).mark_overdue(now)

    to_grace = to_read_only = 0
    candidates = await SubscriptionRepository(session).list_by_status(
        [SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE]
    )
    for sub in candidates:
        snapshot = snapshot_of(sub)
        target = degradation_target(snapshot, now)
        if target is None:
            continue
        values: dict[str, Any] = {}
        if target == SubscriptionStatus.GRACE:
            values["grace_period_end"] = grace_deadline(snapshot, now, grace_days=grace_days)
        repo = SubscriptionRepository(session, tenant_id=sub.tenant_id)
        if not await repo.change_status(sub.id, from_status=snapshot.status, to_status=target, **values):
            continue
        if target == SubscriptionStatus.GRACE:
            to_grace += 1
            message = "Your subscription period has ended. Renew within the grace period to keep full access."
        else:
            to_read_only += 1
            message = "Your grace period has ended. The account is now read-only until payment is received."
        logger.info("Subscription of tenant %s moved %s -> %s", sub.tenant_id, snapshot.status.value, target.value)
        await notify_tenant_admins(
            session,
            notifier,
            sub.tenant_id,
            EventType.SUBSCRIPTION_CHANGED,
            "Subscription status changed",
            message,
            {"subscription_id": sub.id, "from_status": snapshot.status.value, "to_status": target.value},
        )

    logger.info(
        "Daily subscription check: overdue_payments=%d to_grace=%d to_read_only=%d",
        overdue,
        to_grace,
        to_read_only,
    )
    return {"overdue_payments": overdue, "to_grace": to_grace, "to_read_only": to_read_only}
