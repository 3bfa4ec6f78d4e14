"""Subscription lifecycle rules.

Pure functions deciding how a tenant subscription moves between
``TRIAL``, ``ACTIVE``, ``GRACE``, ``READ_ONLY``, ``SUSPENDED`` and
``CANCELLED``, and which access level each state grants.  The
subscription service applies the returned decisions with conditional
updates so that repeated daily runs and duplicate payments are no-ops.

Degradation (daily)::

    TRIAL / ACTIVE --period over--> GRACE --grace over--> READ_ONLY

Recovery (payment)::

    TRIAL / ACTIVE / GRACE / READ_ONLY --paid--> ACTIVE

``SUSPENDED`` and ``CANCELLED`` are administrative states; neither the
daily check nor a payment moves a subscription into or out of them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from servicedesk_core.models.billing import (
    AccessLevel,
    AccessMode,
    BillingCycle,
    SubscriptionPlan,
    SubscriptionStatus,
)

TRIAL_PERIOD_DAYS = 14
GRACE_PERIOD_DAYS = 7
TRIAL_WARNING_DAYS = 3

CYCLE_DAYS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}

# USD list prices.
PLAN_PRICING: dict[SubscriptionPlan, dict[BillingCycle, Decimal]] = {
    SubscriptionPlan.BASIC: {BillingCycle.MONTHLY: Decimal("29.00"), BillingCycle.YEARLY: Decimal("290.00")},
    SubscriptionPlan.PRO: {BillingCycle.MONTHLY: Decimal("79.00"), BillingCycle.YEARLY: Decimal("790.00")},
    SubscriptionPlan.ENTERPRISE: {BillingCycle.MONTHLY: Decimal("199.00"), BillingCycle.YEARLY: Decimal("1990.00")},
}

DEGRADABLE_STATUSES: frozenset[SubscriptionStatus] = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})
RECOVERABLE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.GRACE,
        SubscriptionStatus.READ_ONLY,
    }
)
ADMINISTRATIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED}
)


def price_for(plan: SubscriptionPlan, cycle: BillingCycle) -> Decimal:
    return PLAN_PRICING[plan][cycle]


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The subset of a subscription row the rules need."""

    status: SubscriptionStatus
    trial_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    grace_period_end: datetime | None = None


@dataclass(frozen=True)
class BillingPeriod:
    start: datetime
    end: datetime
    grace_end: datetime


# ---------------------------------------------------------------------------
# Trial
# ---------------------------------------------------------------------------


def trial_period(
    now: datetime,
    *,
    trial_days: int = TRIAL_PERIOD_DAYS,
    grace_days: int = GRACE_PERIOD_DAYS,
) -> BillingPeriod:
    """Billing period of a brand-new trial starting at *now*."""
    end = now + timedelta(days=trial_days)
    return BillingPeriod(start=now, end=end, grace_end=end + timedelta(days=grace_days))


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


def _period_expiry(snapshot: SubscriptionSnapshot) -> datetime | None:
    if snapshot.status == SubscriptionStatus.TRIAL:
        return snapshot.trial_ends_at or snapshot.current_period_end
    return snapshot.current_period_end


def degradation_target(snapshot: SubscriptionSnapshot, now: datetime) -> SubscriptionStatus | None:
    """Return the status the daily check should move *snapshot* to, if any.

    ``None`` means no change; calling this again after the transition was
    applied returns ``None`` for the new state until its own deadline passes.
    """
    if snapshot.status in DEGRADABLE_STATUSES:
        expiry = _period_expiry(snapshot)
        if expiry is not None and expiry < now:
            return SubscriptionStatus.GRACE
        return None
    if snapshot.status == SubscriptionStatus.GRACE:
        if snapshot.grace_period_end is not None and snapshot.grace_period_end < now:
            return SubscriptionStatus.READ_ONLY
    return None


def grace_deadline(snapshot: SubscriptionSnapshot, now: datetime, *, grace_days: int = GRACE_PERIOD_DAYS) -> datetime:
    """Grace end to store when entering ``GRACE``.

    Keeps a deadline computed at activation time if it is still ahead,
    otherwise grants a fresh grace window from *now*.
    """
    if snapshot.grace_period_end is not None and snapshot.grace_period_end > now:
        return snapshot.grace_period_end
    return now + timedelta(days=grace_days)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def can_recover(status: SubscriptionStatus) -> bool:
    return status in RECOVERABLE_STATUSES


def renewal_period(
    snapshot: SubscriptionSnapshot,
    now: datetime,
    cycle: BillingCycle,
    *,
    grace_days: int = GRACE_PERIOD_DAYS,
) -> BillingPeriod:
    """Period granted by a successful payment.

    An ``ACTIVE`` subscription with time left is extended from its current
    end so prepaid days are not lost; every other state restarts at *now*.
    """
    start = now
    if (
        snapshot.status == SubscriptionStatus.ACTIVE
        and snapshot.current_period_end is not None
        and snapshot.current_period_end > now
    ):
        start = snapshot.current_period_end
    end = start + timedelta(days=CYCLE_DAYS[cycle])
    return BillingPeriod(start=start, end=end, grace_end=end + timedelta(days=grace_days))


# ---------------------------------------------------------------------------
# Access level
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubscriptionAccess:
    """Access granted to a tenant, plus an optional warning for the client."""

    level: AccessLevel
    status: SubscriptionStatus | None
    message: str | None = None
    days_remaining: int = 0

    def allows(self, mode: AccessMode) -> bool:
        if self.level == AccessLevel.FULL:
            return True
        if self.level == AccessLevel.READ_ONLY:
            return mode == AccessMode.READ
        return False


def _days_until(deadline: datetime | None, now: datetime) -> int:
    if deadline is None:
        return 0
    return max(0, math.ceil((deadline - now).total_seconds() / 86400))


def access_for(snapshot: SubscriptionSnapshot | None, now: datetime) -> SubscriptionAccess:
    """Derive the platform access level for a tenant's subscription."""
    if snapshot is None:
        return SubscriptionAccess(
            level=AccessLevel.BLOCKED,
            status=None,
            message="No active subscription found. Please subscribe to continue.",
        )

    status = snapshot.status
    days_remaining = _days_until(_period_expiry(snapshot), now)

    if status == SubscriptionStatus.SUSPENDED:
        return SubscriptionAccess(
            level=AccessLevel.BLOCKED,
            status=status,
            message="Your account has been suspended. Please contact support.",
        )
    if status == SubscriptionStatus.CANCELLED:
        return SubscriptionAccess(
            level=AccessLevel.BLOCKED,
            status=status,
            message="Your subscription has been cancelled. Please subscribe to continue.",
        )
    if status == SubscriptionStatus.READ_ONLY:
        return SubscriptionAccess(
            level=AccessLevel.READ_ONLY,
            status=status,
            message=(
                "Your subscription has expired. You can view data but cannot make changes. "
                "Please renew to continue."
            ),
        )
    if status == SubscriptionStatus.GRACE:
        grace_days = _days_until(snapshot.grace_period_end, now)
        return SubscriptionAccess(
            level=AccessLevel.FULL,
            status=status,
            message=f"Payment overdue. You have {grace_days} days remaining before access is restricted.",
            days_remaining=grace_days,
        )

    message = None
    if status == SubscriptionStatus.TRIAL and days_remaining <= TRIAL_WARNING_DAYS:
        message = f"Your trial ends in {days_remaining} days. Subscribe now to keep access."
    return SubscriptionAccess(level=AccessLevel.FULL, status=status, message=message, days_remaining=days_remaining)
