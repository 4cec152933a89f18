"""
Atomic dual-record updater.

Every change to an account or subscription record goes through ``apply_update``: the
account upsert, the subscription upsert and the ``atomic_<operation>`` audit entry are
committed as one unit. The store cannot make a write conditional on a read of another
document, so each record carries a version counter that SQLAlchemy checks inside the same
UPDATE; callers that decide on previously read state pass ``expected_versions`` and get a
``ConcurrentUpdateError`` when someone else wrote first.
"""
import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from subscription_engine import models
from subscription_engine.config import Settings
from subscription_engine.exceptions import AtomicUpdateError, ConcurrentUpdateError
from subscription_engine.record_store import ACCOUNT_FIELDS, SUBSCRIPTION_FIELDS, RecordStore, jsonable
from subscription_engine.states import (
    RetryStatus,
    SubscriptionStatus,
    coerce_account_status,
    coerce_plan,
    ensure_transition,
)
from subscription_engine.utils.dates import isoformat, parse_datetime, utcnow

logger = logging.getLogger(__name__)

OP_SUBSCRIPTION_CREATION = "subscription_creation"
OP_TRIAL_CREATION = "trial_creation"
OP_TRIAL_CONVERSION = "trial_conversion"
OP_TRIAL_EXPIRATION = "trial_expiration"
OP_SUBSCRIPTION_RENEWAL = "subscription_renewal"
OP_SUBSCRIPTION_CANCELLATION = "subscription_cancellation"
OP_SUBSCRIPTION_LINKED = "subscription_linked"
OP_PAYMENT_FAILURE = "payment_failure"
OP_PAYMENT_RETRY_SUCCESS = "payment_retry_success"
OP_PAYMENT_RETRY_FAILED = "payment_retry_failed"
OP_CONSISTENCY_REPAIR = "consistency_repair"

# Keys that steer retry bookkeeping; they are consumed, never stored.
_RETRY_CONTROL_KEYS = ("retry_attempt", "retry_error", "retry_gateway_response")

_PROTECTED_FIELDS = {"user_id", "version", "created_at", "last_updated", "extra"}
_ACCOUNT_COLUMNS = set(ACCOUNT_FIELDS) - _PROTECTED_FIELDS
_SUBSCRIPTION_COLUMNS = set(SUBSCRIPTION_FIELDS) - _PROTECTED_FIELDS
_DATETIME_COLUMNS = {
    "subscription_start",
    "subscription_end",
    "trial_start_date",
    "trial_end_date",
    "cancellation_date",
    "last_payment_failure",
    "start_date",
    "end_date",
    "last_payment_date",
}


class AtomicSubscriptionUpdater:
    def __init__(
        self,
        store: RecordStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def apply_update(
        self,
        user_id: str,
        account_delta: dict[str, Any] | None = None,
        subscription_delta: dict[str, Any] | None = None,
        operation: str = "update",
        expected_versions: dict[str, int] | None = None,
    ) -> bool:
        logger.info("Starting atomic transaction for user %s: %s", user_id, operation)
        account_delta = dict(account_delta) if account_delta else None
        subscription_delta = dict(subscription_delta) if subscription_delta else None

        try:
            self._validate_input(user_id, account_delta, subscription_delta)
            with self.store.batch() as session:
                now = self._clock()
                account = session.get(models.Account, user_id)
                subscription = session.get(models.Subscription, user_id)
                self._check_versions(user_id, operation, account, subscription, expected_versions)

                before = {
                    "account_status": account.subscription_status if account else None,
                    "subscription_status": subscription.status if subscription else None,
                    "payment_retry": subscription.payment_retry if subscription else None,
                }

                if subscription_delta is not None:
                    subscription_delta = self._synthesize_retry_fields(
                        operation, subscription_delta, subscription, now
                    )

                if account_delta:
                    account = self._merge_account(session, user_id, account, account_delta, now)
                if subscription_delta:
                    subscription = self._merge_subscription(session, user_id, subscription, subscription_delta, now)

                session.flush()
                self.store.add_audit(
                    session,
                    user_id,
                    f"atomic_{operation}",
                    {
                        "reference": self._reference_of(account_delta, subscription_delta),
                        "account_data": account_delta,
                        "subscription_data": subscription_delta,
                        "before": before,
                        "timestamp": now,
                    },
                )
        except (StaleDataError, IntegrityError, ConcurrentUpdateError) as exc:
            self._log_failure(user_id, operation, account_delta, subscription_delta, exc)
            if isinstance(exc, ConcurrentUpdateError):
                raise
            raise ConcurrentUpdateError(user_id, operation, "record changed by a concurrent writer") from exc
        except Exception as exc:
            self._log_failure(user_id, operation, account_delta, subscription_delta, exc)
            raise AtomicUpdateError(user_id, operation, str(exc)) from exc

        logger.info("Atomic transaction completed for user %s: %s", user_id, operation)
        return True

    def create_subscription(self, user_id: str, account_delta: dict, subscription_delta: dict) -> bool:
        return self.apply_update(user_id, account_delta, subscription_delta, OP_SUBSCRIPTION_CREATION)

    def create_trial(self, user_id: str, account_delta: dict, subscription_delta: dict) -> bool:
        return self.apply_update(user_id, account_delta, subscription_delta, OP_TRIAL_CREATION)

    def convert_trial(self, user_id: str, account_delta: dict, subscription_delta: dict) -> bool:
        return self.apply_update(user_id, account_delta, subscription_delta, OP_TRIAL_CONVERSION)

    def cancel_subscription(self, user_id: str, account_delta: dict, subscription_delta: dict) -> bool:
        return self.apply_update(user_id, account_delta, subscription_delta, OP_SUBSCRIPTION_CANCELLATION)

    def record_payment_failure(self, user_id: str, account_delta: dict, subscription_delta: dict | None = None) -> bool:
        # The status change is what triggers retry tracking on the subscription side.
        delta = {"status": SubscriptionStatus.PAYMENT_FAILED.value}
        delta.update(subscription_delta or {})
        return self.apply_update(user_id, account_delta, delta, OP_PAYMENT_FAILURE)

    def _validate_input(
        self,
        user_id: str,
        account_delta: dict[str, Any] | None,
        subscription_delta: dict[str, Any] | None,
    ) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("Valid user id is required for atomic transaction")
        if not account_delta and not subscription_delta:
            raise ValueError("At least one of account_delta or subscription_delta must be non-empty")

    def _check_versions(
        self,
        user_id: str,
        operation: str,
        account: models.Account | None,
        subscription: models.Subscription | None,
        expected_versions: dict[str, int] | None,
    ) -> None:
        if not expected_versions:
            return
        current = {
            "account": account.version if account else 0,
            "subscription": subscription.version if subscription else 0,
        }
        for record, expected in expected_versions.items():
            if expected is None:
                continue
            if current.get(record) != expected:
                raise ConcurrentUpdateError(
                    user_id,
                    operation,
                    f"{record} version is {current.get(record)}, expected {expected}",
                )

    def _synthesize_retry_fields(
        self,
        operation: str,
        delta: dict[str, Any],
        subscription: models.Subscription | None,
        now: datetime,
    ) -> dict[str, Any]:
        control = {key: delta.pop(key) for key in _RETRY_CONTROL_KEYS if key in delta}

        if operation == OP_PAYMENT_FAILURE:
            if subscription is not None and subscription.payment_retry:
                # Resetting the counters would let retry_attempts go backwards mid-episode.
                raise ValueError("A payment failure episode is already open for this subscription")
            delta["payment_retry"] = {
                "retry_attempts": 0,
                "max_retries": self.settings.max_retries,
                "next_retry_date": isoformat(now + self.settings.retry_interval),
                "grace_period_end": isoformat(now + self.settings.grace_period),
                "status": RetryStatus.RETRY_SCHEDULED.value,
                "retry_history": [],
            }
            logger.info("Added payment retry tracking to subscription data")

        elif operation == OP_PAYMENT_RETRY_SUCCESS:
            delta["payment_retry"] = None
            delta["status"] = SubscriptionStatus.ACTIVE.value
            logger.info("Cleared payment retry tracking - payment successful")

        elif operation == OP_PAYMENT_RETRY_FAILED:
            delta.update(self._advance_retry(control, subscription, now))

        return delta

    def _advance_retry(
        self,
        control: dict[str, Any],
        subscription: models.Subscription | None,
        now: datetime,
    ) -> dict[str, Any]:
        retry = dict((subscription.payment_retry if subscription else None) or {})
        max_retries = int(retry.get("max_retries") or self.settings.max_retries)
        previous_attempts = int(retry.get("retry_attempts") or 0)
        attempt = int(control.get("retry_attempt") or previous_attempts + 1)
        attempts = max(previous_attempts, attempt)

        history = list(retry.get("retry_history") or [])
        history.append(
            {
                "attempt": attempt,
                "attempted_at": isoformat(now),
                "error": control.get("retry_error"),
                "gateway_response": control.get("retry_gateway_response"),
            }
        )

        retry.update(
            {
                "retry_attempts": attempts,
                "max_retries": max_retries,
                "retry_history": history,
            }
        )
        if attempts >= max_retries:
            retry["status"] = RetryStatus.GRACE_PERIOD.value
            retry["next_retry_date"] = None
            retry["grace_period_end"] = isoformat(now + self.settings.grace_period)
            logger.info("All %s retries failed - entered grace period", max_retries)
        else:
            retry["status"] = RetryStatus.RETRY_SCHEDULED.value
            retry["next_retry_date"] = isoformat(now + self.settings.retry_interval)
            logger.info("Retry %s failed - scheduling next attempt", attempt)

        return {"payment_retry": retry, "status": retry["status"]}

    def _merge_account(
        self,
        session: Session,
        user_id: str,
        account: models.Account | None,
        delta: dict[str, Any],
        now: datetime,
    ) -> models.Account:
        if "plan" in delta:
            delta["plan"] = coerce_plan(delta["plan"]).value
        if "subscription_status" in delta:
            delta["subscription_status"] = coerce_account_status(delta["subscription_status"]).value

        if account is None:
            account = models.Account(user_id=user_id, created_at=now, payment_failure_count=0)
            session.add(account)
            logger.info("Added account creation to batch: %s", ", ".join(delta))
        else:
            logger.info("Added account update to batch: %s", ", ".join(delta))

        _assign(account, delta, _ACCOUNT_COLUMNS)
        account.last_updated = now
        return account

    def _merge_subscription(
        self,
        session: Session,
        user_id: str,
        subscription: models.Subscription | None,
        delta: dict[str, Any],
        now: datetime,
    ) -> models.Subscription:
        current_status = subscription.status if subscription else None
        if "status" in delta:
            delta["status"] = ensure_transition(current_status, delta["status"]).value

        if subscription is None:
            subscription = models.Subscription(
                user_id=user_id,
                created_at=now,
                status=delta.get("status", SubscriptionStatus.INACTIVE.value),
            )
            session.add(subscription)

        _assign(subscription, delta, _SUBSCRIPTION_COLUMNS)
        subscription.last_updated = now
        logger.info("Added subscription update to batch: %s", ", ".join(delta))
        return subscription

    @staticmethod
    def _reference_of(*deltas: dict[str, Any] | None) -> str | None:
        for delta in deltas:
            if not delta:
                continue
            reference = delta.get("reference") or delta.get("subscription_reference")
            if reference:
                return str(reference)
        return None

    def _log_failure(
        self,
        user_id: str,
        operation: str,
        account_delta: dict[str, Any] | None,
        subscription_delta: dict[str, Any] | None,
        exc: Exception,
    ) -> None:
        logger.error("Atomic transaction failed for user %s: %s (%s)", user_id, operation, exc)
        self.store.log_event_safe(
            user_id if isinstance(user_id, str) else None,
            f"atomic_{operation}_failed",
            {
                "error": str(exc),
                "error_type": type(exc).__name__,
                "account_data": account_delta,
                "subscription_data": subscription_delta,
                "timestamp": self._clock(),
            },
        )


def _assign(record: Any, delta: dict[str, Any], columns: set[str]) -> None:
    extra = dict(record.extra or {})
    for key, value in delta.items():
        if key in columns:
            if key in _DATETIME_COLUMNS and value is not None:
                value = parse_datetime(value)
            if key in {"provider_payload", "payment_retry"} and value is not None:
                value = jsonable(value)
            setattr(record, key, value)
        else:
            extra[key] = jsonable(value)
    if extra != (record.extra or {}):
        record.extra = extra or None
