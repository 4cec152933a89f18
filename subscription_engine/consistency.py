"""
Read-only drift detection between the account and subscription records.

``check_consistency`` never writes. ``repair`` is an explicit, separately audited operation
that copies one side onto the other through the atomic updater.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from subscription_engine.atomic import OP_CONSISTENCY_REPAIR, AtomicSubscriptionUpdater
from subscription_engine.exceptions import RecordNotFoundError
from subscription_engine.record_store import RecordStore
from subscription_engine.states import AccountStatus, Plan, SubscriptionStatus, account_view
from subscription_engine.utils.dates import parse_datetime, utcnow

logger = logging.getLogger(__name__)

REPAIR_SOURCES = ("subscription", "account")

# Account statuses that only make sense with a subscription record behind them.
_PAID_ACCOUNT_STATUSES = {
    AccountStatus.ACTIVE.value,
    AccountStatus.TRIAL.value,
    AccountStatus.PAYMENT_FAILED.value,
}
_PREMIUM_SUBSCRIPTION_STATUSES = {
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.PAYMENT_FAILED.value,
    SubscriptionStatus.RETRY_SCHEDULED.value,
    SubscriptionStatus.GRACE_PERIOD.value,
}


@dataclass
class Inconsistency:
    field: str
    account_value: Any
    subscription_value: Any

    def as_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "account_value": self.account_value,
            "subscription_value": self.subscription_value,
        }


@dataclass
class ConsistencyReport:
    user_id: str
    inconsistencies: list[Inconsistency] = field(default_factory=list)
    account: dict[str, Any] | None = None
    subscription: dict[str, Any] | None = None

    @property
    def is_consistent(self) -> bool:
        return not self.inconsistencies


class ConsistencyValidator:
    def __init__(
        self,
        store: RecordStore,
        updater: AtomicSubscriptionUpdater | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.updater = updater
        self._clock = clock

    def check_consistency(self, user_id: str) -> ConsistencyReport:
        logger.info("Checking data consistency for user %s", user_id)
        account = self.store.get_account(user_id)
        if account is None:
            raise RecordNotFoundError(f"Account not found: {user_id}")
        subscription = self.store.get_subscription(user_id)

        report = ConsistencyReport(user_id=user_id, account=account, subscription=subscription)
        if subscription is None:
            if account.get("subscription_status") in _PAID_ACCOUNT_STATUSES:
                report.inconsistencies.append(
                    Inconsistency("subscription_status/status", account.get("subscription_status"), None)
                )
        else:
            self._compare(report, account, subscription)

        if account.get("subscription_status") == AccountStatus.ACTIVE.value and self._end_date_drifted(
            account, subscription
        ):
            report.inconsistencies.append(
                Inconsistency(
                    "subscription_end/end_date",
                    account.get("subscription_end"),
                    (subscription or {}).get("end_date"),
                )
            )

        if report.is_consistent:
            logger.info("Data consistency check passed for user %s", user_id)
        else:
            logger.warning(
                "Data inconsistency detected for user %s: %s",
                user_id,
                [item.as_dict() for item in report.inconsistencies],
            )
        return report

    def _end_date_drifted(self, account: dict[str, Any], subscription: dict[str, Any] | None) -> bool:
        """An active account needs both end dates in the future and equal to each other."""
        now = self._clock()
        account_end = parse_datetime(account.get("subscription_end"))
        if account_end is None or account_end <= now:
            return True
        if subscription is None:
            return False
        subscription_end = parse_datetime(subscription.get("end_date"))
        if subscription_end is None or subscription_end <= now:
            return True
        return subscription_end != account_end

    def _compare(self, report: ConsistencyReport, account: dict[str, Any], subscription: dict[str, Any]) -> None:
        pairs = (
            ("subscription_status/status", account.get("subscription_status"), account_view(subscription.get("status"))),
            ("subscription_plan/plan_id", account.get("subscription_plan"), subscription.get("plan_id")),
            ("subscription_reference/reference", account.get("subscription_reference"), subscription.get("reference")),
        )
        for name, account_value, subscription_value in pairs:
            if account_value != subscription_value:
                if name == "subscription_status/status":
                    subscription_value = subscription.get("status")
                report.inconsistencies.append(Inconsistency(name, account_value, subscription_value))

    def repair(self, user_id: str, source: str = "subscription") -> ConsistencyReport:
        """Overwrite the drifted side with ``source`` and re-check."""
        if source not in REPAIR_SOURCES:
            raise ValueError(f"source must be one of {', '.join(REPAIR_SOURCES)}")
        if self.updater is None:
            raise RuntimeError("repair requires an AtomicSubscriptionUpdater")

        report = self.check_consistency(user_id)
        if report.is_consistent:
            return report
        if report.subscription is None:
            raise RecordNotFoundError(f"Subscription not found: {user_id}")

        account, subscription = report.account, report.subscription
        if source == "subscription":
            status = subscription.get("status")
            self.updater.apply_update(
                user_id,
                account_delta={
                    "subscription_status": account_view(status),
                    "subscription_plan": subscription.get("plan_id"),
                    "subscription_reference": subscription.get("reference"),
                    "subscription_end": subscription.get("end_date"),
                    "plan": Plan.PREMIUM.value if status in _PREMIUM_SUBSCRIPTION_STATUSES else Plan.FREE.value,
                    "repair_source": source,
                },
                operation=OP_CONSISTENCY_REPAIR,
                expected_versions={"account": account.get("version")},
            )
        else:
            subscription_delta = {
                "plan_id": account.get("subscription_plan"),
                "reference": account.get("subscription_reference"),
                "end_date": account.get("subscription_end"),
                "repair_source": source,
            }
            if account_view(subscription.get("status")) != account.get("subscription_status"):
                subscription_delta["status"] = account.get("subscription_status")
            self.updater.apply_update(
                user_id,
                subscription_delta=subscription_delta,
                operation=OP_CONSISTENCY_REPAIR,
                expected_versions={"subscription": subscription.get("version")},
            )

        logger.info("Consistency repair applied for user %s from %s", user_id, source)
        return self.check_consistency(user_id)
