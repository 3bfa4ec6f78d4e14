"""Unit tests for servicedesk_core.billing.subscription_rules."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from servicedesk_core.billing.subscription_rules import (
    GRACE_PERIOD_DAYS,
    TRIAL_PERIOD_DAYS,
    SubscriptionSnapshot,
    access_for,
    can_recover,
    degradation_target,
    grace_deadline,
    price_for,
    renewal_period,
    trial_period,
)
from servicedesk_core.models.billing import (
    AccessLevel,
    AccessMode,
    BillingCycle,
    SubscriptionPlan,
    SubscriptionStatus,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
DAY = timedelta(days=1)
St = SubscriptionStatus


# ---------------------------------------------------------------------------
# Trial and pricing
# ---------------------------------------------------------------------------


class TestTrialPeriod:
    def test_defaults(self):
        period = trial_period(NOW)
        assert period.start == NOW
        assert period.end == NOW + TRIAL_PERIOD_DAYS * DAY
        assert period.grace_end == period.end + GRACE_PERIOD_DAYS * DAY

    def test_custom_lengths(self):
        period = trial_period(NOW, trial_days=30, grace_days=3)
        assert period.end == NOW + 30 * DAY
        assert period.grace_end == NOW + 33 * DAY


class TestPricing:
    def test_yearly_is_ten_months(self):
        for plan in SubscriptionPlan:
            assert price_for(plan, BillingCycle.YEARLY) == price_for(plan, BillingCycle.MONTHLY) * 10

    def test_basic_monthly(self):
        assert price_for(SubscriptionPlan.BASIC, BillingCycle.MONTHLY) == Decimal("29.00")


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


class TestDegradationTarget:
    def test_expired_trial_goes_to_grace(self):
        snapshot = SubscriptionSnapshot(status=St.TRIAL, trial_ends_at=NOW - DAY)
        assert degradation_target(snapshot, NOW) == St.GRACE

    def test_running_trial_untouched(self):
        snapshot = SubscriptionSnapshot(status=St.TRIAL, trial_ends_at=NOW + DAY)
        assert degradation_target(snapshot, NOW) is None

    def test_trial_falls_back_to_period_end(self):
        snapshot = SubscriptionSnapshot(status=St.TRIAL, current_period_end=NOW - DAY)
        assert degradation_target(snapshot, NOW) == St.GRACE

    def test_expired_active_goes_to_grace(self):
        snapshot = SubscriptionSnapshot(status=St.ACTIVE, current_period_end=NOW - timedelta(seconds=1))
        assert degradation_target(snapshot, NOW) == St.GRACE

    def test_expired_grace_goes_to_read_only(self):
        snapshot = SubscriptionSnapshot(status=St.GRACE, grace_period_end=NOW - DAY)
        assert degradation_target(snapshot, NOW) == St.READ_ONLY

    def test_grace_still_running(self):
        snapshot = SubscriptionSnapshot(status=St.GRACE, grace_period_end=NOW + DAY)
        assert degradation_target(snapshot, NOW) is None

    @pytest.mark.parametrize("status", [St.READ_ONLY, St.SUSPENDED, St.CANCELLED])
    def test_terminal_for_daily_check(self, status):
        snapshot = SubscriptionSnapshot(
            status=status,
            trial_ends_at=NOW - 30 * DAY,
            current_period_end=NOW - 30 * DAY,
            grace_period_end=NOW - 20 * DAY,
        )
        assert degradation_target(snapshot, NOW) is None

    def test_second_run_is_a_no_op(self):
        snapshot = SubscriptionSnapshot(status=St.ACTIVE, current_period_end=NOW - DAY)
        target = degradation_target(snapshot, NOW)
        assert target == St.GRACE
        after = SubscriptionSnapshot(
            status=target,
            current_period_end=snapshot.current_period_end,
            grace_period_end=grace_deadline(snapshot, NOW),
        )
        assert degradation_target(after, NOW) is None


class TestGraceDeadline:
    def test_keeps_future_deadline(self):
        snapshot = SubscriptionSnapshot(status=St.ACTIVE, grace_period_end=NOW + 3 * DAY)
        assert grace_deadline(snapshot, NOW) == NOW + 3 * DAY

    def test_fresh_window_when_passed(self):
        snapshot = SubscriptionSnapshot(status=St.ACTIVE, grace_period_end=NOW - DAY)
        assert grace_deadline(snapshot, NOW, grace_days=5) == NOW + 5 * DAY


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestRecovery:
    @pytest.mark.parametrize("status", [St.TRIAL, St.ACTIVE, St.GRACE, St.READ_ONLY])
    def test_recoverable(self, status):
        assert can_recover(status)

    @pytest.mark.parametrize("status", [St.SUSPENDED, St.CANCELLED])
    def test_administrative_states_not_recoverable(self, status):
        assert not can_recover(status)

    def test_active_with_time_left_extends_from_period_end(self):
        snapshot = SubscriptionSnapshot(status=St.ACTIVE, current_period_end=NOW + 10 * DAY)
        period = renewal_period(snapshot, NOW, BillingCycle.MONTHLY)
        assert period.start == NOW + 10 * DAY
        assert period.end == NOW + 40 * DAY
        assert period.grace_end == period.end + GRACE_PERIOD_DAYS * DAY

    def test_read_only_restarts_now(self):
        snapshot = SubscriptionSnapshot(status=St.READ_ONLY, current_period_end=NOW - 20 * DAY)
        period = renewal_period(snapshot, NOW, BillingCycle.YEARLY)
        assert period.start == NOW
        assert period.end == NOW + 365 * DAY

    def test_trial_with_time_left_restarts_now(self):
        snapshot = SubscriptionSnapshot(status=St.TRIAL, current_period_end=NOW + 5 * DAY)
        assert renewal_period(snapshot, NOW, BillingCycle.MONTHLY).start == NOW


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


class TestAccessFor:
    def test_no_subscription_blocks(self):
        access = access_for(None, NOW)
        assert access.level == AccessLevel.BLOCKED
        assert access.status is None
        assert not access.allows(AccessMode.READ)

    @pytest.mark.parametrize("status", [St.SUSPENDED, St.CANCELLED])
    def test_administrative_states_block(self, status):
        access = access_for(SubscriptionSnapshot(status=status), NOW)
        assert access.level == AccessLevel.BLOCKED
        assert not access.allows(AccessMode.READ)

    def test_read_only_allows_reads_only(self):
        access = access_for(SubscriptionSnapshot(status=St.READ_ONLY), NOW)
        assert access.level == AccessLevel.READ_ONLY
        assert access.allows(AccessMode.READ)
        assert not access.allows(AccessMode.WRITE)
        assert "cannot make changes" in (access.message or "")

    def test_grace_is_full_with_warning(self):
        access = access_for(SubscriptionSnapshot(status=St.GRACE, grace_period_end=NOW + 2 * DAY), NOW)
        assert access.level == AccessLevel.FULL
        assert access.allows(AccessMode.WRITE)
        assert access.days_remaining == 2
        assert "2 days remaining" in (access.message or "")

    def test_trial_warning_near_end(self):
        access = access_for(SubscriptionSnapshot(status=St.TRIAL, trial_ends_at=NOW + 2 * DAY), NOW)
        assert access.level == AccessLevel.FULL
        assert access.message is not None
        assert access.days_remaining == 2

    def test_trial_without_warning(self):
        access = access_for(SubscriptionSnapshot(status=St.TRIAL, trial_ends_at=NOW + 10 * DAY), NOW)
        assert access.message is None
        assert access.days_remaining == 10

    def test_partial_day_rounds_up(self):
        access = access_for(SubscriptionSnapshot(status=St.ACTIVE, current_period_end=NOW + timedelta(hours=1)), NOW)
        assert access.days_remaining == 1
