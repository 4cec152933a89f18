"""
Closed status types for accounts and subscriptions and the allowed transitions between them.
"""
from enum import Enum

from subscription_engine.exceptions import InvalidTransitionError


class Plan(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    TRIAL_INCOMPLETE = "trial_incomplete"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    PAYMENT_FAILED = "payment_failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    TRIAL_INCOMPLETE = "trial_incomplete"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    PAYMENT_FAILED = "payment_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    GRACE_PERIOD = "grace_period"


class RetryStatus(str, Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    GRACE_PERIOD = "grace_period"


S = SubscriptionStatus

# Target status -> statuses it may be entered from. ``None`` is a record that does not exist yet.
_SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, frozenset] = {
    S.INACTIVE: frozenset({None, S.TRIAL_INCOMPLETE}),
    S.TRIAL_INCOMPLETE: frozenset({None, S.INACTIVE, S.CANCELLED, S.EXPIRED}),
    S.TRIAL: frozenset({None, S.INACTIVE, S.TRIAL_INCOMPLETE, S.CANCELLED, S.EXPIRED}),
    S.ACTIVE: frozenset(
        {
            None,
            S.INACTIVE,
            S.TRIAL_INCOMPLETE,
            S.TRIAL,
            S.PAYMENT_FAILED,
            S.RETRY_SCHEDULED,
            S.GRACE_PERIOD,
            S.CANCELLED,
            S.EXPIRED,
        }
    ),
    S.PAYMENT_FAILED: frozenset({S.ACTIVE, S.TRIAL}),
    S.RETRY_SCHEDULED: frozenset({S.PAYMENT_FAILED}),
    S.GRACE_PERIOD: frozenset({S.PAYMENT_FAILED, S.RETRY_SCHEDULED}),
    S.CANCELLED: frozenset(
        {
            None,
            S.INACTIVE,
            S.TRIAL_INCOMPLETE,
            S.TRIAL,
            S.ACTIVE,
            S.PAYMENT_FAILED,
            S.RETRY_SCHEDULED,
            S.GRACE_PERIOD,
            S.EXPIRED,
        }
    ),
    S.EXPIRED: frozenset(
        {S.TRIAL, S.ACTIVE, S.PAYMENT_FAILED, S.RETRY_SCHEDULED, S.GRACE_PERIOD, S.CANCELLED}
    ),
}

# Subscription-side states that the account record shows as a payment failure.
_ACCOUNT_VIEW = {
    S.RETRY_SCHEDULED: AccountStatus.PAYMENT_FAILED,
    S.GRACE_PERIOD: AccountStatus.PAYMENT_FAILED,
}


def coerce_subscription_status(value) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise ValueError(f"Unknown subscription status: {value!r}") from None


def coerce_account_status(value) -> AccountStatus:
    try:
        return AccountStatus(value)
    except ValueError:
        raise ValueError(f"Unknown account subscription status: {value!r}") from None


def coerce_plan(value) -> Plan:
    try:
        return Plan(value)
    except ValueError:
        raise ValueError(f"Unknown plan: {value!r}") from None


def can_transition(current: str | None, target: str) -> bool:
    target_status = coerce_subscription_status(target)
    current_status = coerce_subscription_status(current) if current is not None else None
    if current_status == target_status:
        return True
    return current_status in _SUBSCRIPTION_TRANSITIONS[target_status]


def ensure_transition(current: str | None, target: str) -> SubscriptionStatus:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    return SubscriptionStatus(target)


def account_view(status: str | None) -> str | None:
    """Status as the account record is expected to show it."""
    if status is None:
        return None
    try:
        subscription_status = SubscriptionStatus(status)
    except ValueError:
        return status
    return _ACCOUNT_VIEW.get(subscription_status, subscription_status).value
