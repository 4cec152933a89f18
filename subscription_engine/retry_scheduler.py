"""
Bounded payment retries followed by a grace period.

A failed charge opens a failure episode (``payment_failure``). Each scheduled retry re-charges
the stored authorization; after ``max_retries`` failed attempts the subscription sits in its
grace period until someone pays or the grace window runs out. All writes go through the atomic
updater, so the retry counters only ever move together with the records they describe.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

from subscription_engine.atomic import (
    OP_PAYMENT_FAILURE,
    OP_PAYMENT_RETRY_FAILED,
    OP_PAYMENT_RETRY_SUCCESS,
    AtomicSubscriptionUpdater,
)
from subscription_engine.exceptions import RecordNotFoundError
from subscription_engine.gateway import RetryChargeResult
from subscription_engine.plans import billing_period_end, get_plan
from subscription_engine.record_store import RecordStore
from subscription_engine.states import AccountStatus, Plan, RetryStatus, SubscriptionStatus
from subscription_engine.utils.dates import isoformat, utcnow

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_GRACE_PERIOD = "grace_period"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_SKIPPED = "skipped"

IN_RETRY_STATUSES = {RetryStatus.RETRY_SCHEDULED.value, RetryStatus.GRACE_PERIOD.value}


class PaymentRetryGateway(Protocol):
    def retry_charge(
        self,
        subscription: dict[str, Any],
        account: dict[str, Any] | None,
        attempt: int,
    ) -> RetryChargeResult:
        ...


@dataclass
class RetryOutcome:
    status: str
    message: str
    attempt: int | None = None
    next_retry_date: str | None = None
    grace_period_end: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == OUTCOME_SUCCEEDED


def retry_state(subscription: dict[str, Any] | None) -> dict[str, Any] | None:
    if not subscription:
        return None
    return subscription.get("payment_retry") or None


def in_retry(subscription: dict[str, Any] | None) -> bool:
    state = retry_state(subscription)
    return bool(state) and state.get("status") in IN_RETRY_STATUSES


class PaymentRetryScheduler:
    def __init__(
        self,
        store: RecordStore,
        updater: AtomicSubscriptionUpdater,
        gateway: PaymentRetryGateway,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.updater = updater
        self.gateway = gateway
        self._clock = clock

    def record_failure(
        self,
        user_id: str,
        error: str | None = None,
        reference: str | None = None,
    ) -> RetryOutcome:
        account = self.store.get_account(user_id)
        subscription = self.store.get_subscription(user_id)
        if subscription is None:
            raise RecordNotFoundError(f"Subscription not found for user {user_id}")

        if retry_state(subscription):
            logger.info("Payment failure for user %s ignored: failure episode already open", user_id)
            state = retry_state(subscription)
            return RetryOutcome(
                status=state.get("status") or OUTCOME_RETRY_SCHEDULED,
                message="Payment failure episode already open",
                next_retry_date=state.get("next_retry_date"),
                grace_period_end=state.get("grace_period_end"),
            )

        now = self._clock()
        failure_count = int((account or {}).get("payment_failure_count") or 0) + 1
        account_delta = {
            "subscription_status": AccountStatus.PAYMENT_FAILED.value,
            "payment_failure_count": failure_count,
            "last_payment_failure": now,
        }
        subscription_delta: dict[str, Any] = {"last_payment_error": error}
        if reference:
            subscription_delta["last_failed_reference"] = reference

        self.updater.apply_update(
            user_id,
            account_delta,
            {"status": SubscriptionStatus.PAYMENT_FAILED.value, **subscription_delta},
            OP_PAYMENT_FAILURE,
            expected_versions={
                "account": (account or {}).get("version", 0),
                "subscription": subscription.get("version"),
            },
        )

        state = retry_state(self.store.get_subscription(user_id)) or {}
        logger.info("Payment failure recorded for user %s (failure #%s)", user_id, failure_count)
        return RetryOutcome(
            status=OUTCOME_RETRY_SCHEDULED,
            message="Payment failed, retry scheduled",
            next_retry_date=state.get("next_retry_date"),
            grace_period_end=state.get("grace_period_end"),
            error=error,
        )

    def execute_retry(self, user_id: str) -> RetryOutcome:
        subscription = self.store.get_subscription(user_id)
        if subscription is None:
            raise RecordNotFoundError(f"Subscription not found for user {user_id}")

        state = retry_state(subscription)
        if not state or state.get("status") != RetryStatus.RETRY_SCHEDULED.value:
            return RetryOutcome(status=OUTCOME_SKIPPED, message="No payment retry scheduled")

        attempt = int(state.get("retry_attempts") or 0) + 1
        account = self.store.get_account(user_id)
        logger.info("Executing payment retry %s for user %s", attempt, user_id)

        try:
            result = self.gateway.retry_charge(subscription, account, attempt)
        except Exception as exc:
            logger.exception("Payment retry %s for user %s raised", attempt, user_id)
            result = RetryChargeResult(success=False, error=str(exc), transient=True)

        if result.transient:
            self.store.log_event_safe(
                user_id,
                "payment_retry_execution_error",
                {"attempt": attempt, "error": result.error, "error_code": "RETRY_EXECUTION_ERROR"},
            )
            return RetryOutcome(
                status=OUTCOME_UNKNOWN,
                message="Payment retry outcome unknown; nothing recorded",
                attempt=attempt,
                error=result.error,
            )

        expected_versions = {"subscription": subscription.get("version")}
        if result.success:
            self._apply_success(user_id, subscription, result.data.get("reference"), result.data, expected_versions)
            self.store.log_event_safe(
                user_id,
                "payment_retry_successful",
                {
                    "attempt": attempt,
                    "transaction_id": f"retry_success_{user_id}_{int(self._clock().timestamp())}",
                    "paystack_data": result.data,
                },
            )
            return RetryOutcome(status=OUTCOME_SUCCEEDED, message="Payment retry successful", attempt=attempt)

        self.updater.apply_update(
            user_id,
            {"last_payment_failure": self._clock()},
            {
                "retry_attempt": attempt,
                "retry_error": result.error,
                "retry_gateway_response": result.data.get("gateway_response"),
            },
            OP_PAYMENT_RETRY_FAILED,
            expected_versions=expected_versions,
        )
        state = retry_state(self.store.get_subscription(user_id)) or {}

        if state.get("status") == RetryStatus.GRACE_PERIOD.value:
            self.store.log_event_safe(
                user_id,
                "grace_period_activated",
                {
                    "attempt": attempt,
                    "grace_period_end": state.get("grace_period_end"),
                    "action_required": "update_payment_method",
                },
            )
            logger.warning("All payment retries failed for user %s; grace period until %s", user_id, state.get("grace_period_end"))
            return RetryOutcome(
                status=OUTCOME_GRACE_PERIOD,
                message="All retry attempts failed, grace period activated",
                attempt=attempt,
                grace_period_end=state.get("grace_period_end"),
                error=result.error,
            )

        self.store.log_event_safe(
            user_id,
            "payment_retry_failed",
            {
                "attempt": attempt,
                "error": result.error,
                "next_attempt": attempt + 1,
                "next_retry_date": state.get("next_retry_date"),
            },
        )
        return RetryOutcome(
            status=OUTCOME_RETRY_SCHEDULED,
            message="Payment retry failed, next attempt scheduled",
            attempt=attempt,
            next_retry_date=state.get("next_retry_date"),
            error=result.error,
        )

    def record_payment_success(
        self,
        user_id: str,
        reference: str | None,
        transaction: dict[str, Any] | None = None,
    ) -> bool:
        """Close an open failure episode after any successful charge. ``False`` when none is open."""
        subscription = self.store.get_subscription(user_id)
        if not in_retry(subscription):
            return False
        self._apply_success(user_id, subscription, reference, transaction, {"subscription": subscription.get("version")})
        self.store.log_event_safe(
            user_id,
            "payment_retry_successful",
            {"reference": reference, "source": "charge", "previous_state": retry_state(subscription)},
        )
        return True

    def _apply_success(
        self,
        user_id: str,
        subscription: dict[str, Any],
        reference: str | None,
        transaction: dict[str, Any] | None,
        expected_versions: dict[str, int | None],
    ) -> None:
        now = self._clock()
        period_end = billing_period_end(get_plan(subscription.get("plan_id")), now)
        account_delta: dict[str, Any] = {
            "plan": Plan.PREMIUM.value,
            "subscription_status": AccountStatus.ACTIVE.value,
            "subscription_end": period_end,
        }
        subscription_delta: dict[str, Any] = {
            "last_payment_date": now,
            "end_date": period_end,
        }
        if reference:
            account_delta["subscription_reference"] = reference
            subscription_delta["reference"] = reference
        if transaction:
            subscription_delta["provider_payload"] = transaction
        self.updater.apply_update(
            user_id,
            account_delta,
            subscription_delta,
            OP_PAYMENT_RETRY_SUCCESS,
            expected_versions=expected_versions,
        )
        logger.info("Payment recovered for user %s; retry state cleared (next period ends %s)", user_id, isoformat(period_end))

    def due_retries(self, now: datetime | None = None) -> list[str]:
        return self.store.due_retries(now or self._clock())

    def expired_grace_periods(self, now: datetime | None = None) -> list[str]:
        return self.store.expired_grace_periods(now or self._clock())
