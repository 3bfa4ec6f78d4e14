"""Subscription and payment enums shared by the billing rules and the API."""

from __future__ import annotations

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Tenant billing state driven by the subscription state machine."""

    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    GRACE = "GRACE"
    READ_ONLY = "READ_ONLY"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class SubscriptionPlan(str, Enum):
    BASIC = "BASIC"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentProvider(str, Enum):
    PAYNOW = "paynow"
    BANK_TRANSFER = "bank_transfer"


class AccessLevel(str, Enum):
    """Platform access derived from the subscription status."""

    FULL = "full"
    READ_ONLY = "read_only"
    BLOCKED = "blocked"


class AccessMode(str, Enum):
    """Kind of access a request needs."""

    READ = "read"
    WRITE = "write"
