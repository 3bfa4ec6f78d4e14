"""Subscription lifecycle rules and the Paynow message codec."""

from servicedesk_core.billing.paynow import (
    InitResponse,
    PaynowNotice,
    build_init_request,
    build_reference,
    compute_hash,
    decode_form,
    map_status,
    parse_init_response,
    parse_notice,
    tenant_from_reference,
    verify_hash,
)
from servicedesk_core.billing.subscription_rules import (
    CYCLE_DAYS,
    GRACE_PERIOD_DAYS,
    PLAN_PRICING,
    TRIAL_PERIOD_DAYS,
    BillingPeriod,
    SubscriptionAccess,
    SubscriptionSnapshot,
    access_for,
    can_recover,
    degradation_target,
    grace_deadline,
    price_for,
    renewal_period,
    trial_period,
)

__all__ = [
    "BillingPeriod",
    "CYCLE_DAYS",
    "GRACE_PERIOD_DAYS",
    "InitResponse",
    "PLAN_PRICING",
    "PaynowNotice",
    "SubscriptionAccess",
    "SubscriptionSnapshot",
    "TRIAL_PERIOD_DAYS",
    "access_for",
    "build_init_request",
    "build_reference",
    "can_recover",
    "compute_hash",
    "decode_form",
    "degradation_target",
    "grace_deadline",
    "map_status",
    "parse_init_response",
    "parse_notice",
    "price_for",
    "renewal_period",
    "tenant_from_reference",
    "trial_period",
    "verify_hash",
]
