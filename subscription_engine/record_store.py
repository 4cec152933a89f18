"""
Keyed access to the account/subscription records and the append-only audit log.

``batch()`` is the grouped-write primitive: everything added to the yielded session is
committed together or rolled back together.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterator

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from subscription_engine import models
from subscription_engine.states import RetryStatus, SubscriptionStatus
from subscription_engine.utils.dates import parse_datetime, utcnow

logger = logging.getLogger(__name__)

AUDIT_WEBHOOK_UNVERIFIED = "webhook_unverified"
AUDIT_WEBHOOK_REPROCESSED = "webhook_reprocessed"

ACCOUNT_FIELDS = (
    "user_id",
    "email",
    "plan",
    "subscription_status",
    "subscription_plan",
    "subscription_reference",
    "customer_code",
    "subscription_code",
    "external_subscription_id",
    "subscription_start",
    "subscription_end",
    "trial_start_date",
    "trial_end_date",
    "cancellation_date",
    "payment_failure_count",
    "last_payment_failure",
    "created_at",
    "last_updated",
    "version",
)

SUBSCRIPTION_FIELDS = (
    "user_id",
    "plan_id",
    "status",
    "reference",
    "amount",
    "currency",
    "start_date",
    "end_date",
    "customer_code",
    "subscription_code",
    "external_subscription_id",
    "authorization_code",
    "trial_start_date",
    "trial_end_date",
    "cancellation_date",
    "last_payment_date",
    "provider_payload",
    "payment_retry",
    "created_at",
    "last_updated",
    "version",
)


def jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(item) for item in value]
    return value


def _record_to_dict(record: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    data = {name: getattr(record, name) for name in fields}
    data.update(record.extra or {})
    return data


def account_to_dict(account: models.Account | None) -> dict[str, Any] | None:
    if account is None:
        return None
    return _record_to_dict(account, ACCOUNT_FIELDS)


def subscription_to_dict(subscription: models.Subscription | None) -> dict[str, Any] | None:
    if subscription is None:
        return None
    return _record_to_dict(subscription, SUBSCRIPTION_FIELDS)


class RecordStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def batch(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def get_account(self, user_id: str) -> dict[str, Any] | None:
        with self.reader() as session:
            return account_to_dict(session.get(models.Account, user_id))

    def get_subscription(self, user_id: str) -> dict[str, Any] | None:
        with self.reader() as session:
            return subscription_to_dict(session.get(models.Subscription, user_id))

    def find_account_by_email(self, email: str | None) -> dict[str, Any] | None:
        normalized = (email or "").strip().lower()
        if not normalized:
            return None
        with self.reader() as session:
            account = (
                session.query(models.Account)
                .filter(func.lower(models.Account.email) == normalized)
                .order_by(models.Account.created_at.desc())
                .first()
            )
            return account_to_dict(account)

    def find_account_by_subscription_code(self, subscription_code: str | None) -> dict[str, Any] | None:
        code = (subscription_code or "").strip()
        if not code:
            return None
        with self.reader() as session:
            account = session.query(models.Account).filter(models.Account.subscription_code == code).first()
            return account_to_dict(account)

    def find_subscription_by_reference(self, reference: str) -> dict[str, Any] | None:
        with self.reader() as session:
            subscription = (
                session.query(models.Subscription).filter(models.Subscription.reference == reference).first()
            )
            return subscription_to_dict(subscription)

    def find_applied_reference(self, reference: str) -> dict[str, Any] | None:
        """First successful ``atomic_*`` audit entry that carried this payment reference."""
        with self.reader() as session:
            entry = (
                session.query(models.AuditLogEntry)
                .filter(
                    models.AuditLogEntry.reference == reference,
                    models.AuditLogEntry.event_type.like("atomic\\_%", escape="\\"),
                    ~models.AuditLogEntry.event_type.like("%\\_failed", escape="\\"),
                )
                .order_by(models.AuditLogEntry.id.asc())
                .first()
            )
            if entry is None:
                return None
            return {
                "id": entry.id,
                "user_id": entry.user_id,
                "event_type": entry.event_type,
                "event_data": entry.event_data,
                "timestamp": entry.timestamp,
            }

    def audit_entries(self, user_id: str | None = None, event_type: str | None = None) -> list[dict[str, Any]]:
        with self.reader() as session:
            query = session.query(models.AuditLogEntry)
            if user_id is not None:
                query = query.filter(models.AuditLogEntry.user_id == user_id)
            if event_type is not None:
                query = query.filter(models.AuditLogEntry.event_type == event_type)
            return [
                {
                    "id": entry.id,
                    "user_id": entry.user_id,
                    "event_type": entry.event_type,
                    "event_data": entry.event_data,
                    "reference": entry.reference,
                    "timestamp": entry.timestamp,
                }
                for entry in query.order_by(models.AuditLogEntry.id.asc()).all()
            ]

    def add_audit(
        self,
        session: Session,
        user_id: str | None,
        event_type: str,
        event_data: dict[str, Any] | None,
    ) -> models.AuditLogEntry:
        payload = jsonable(event_data or {})
        reference = payload.get("reference") if isinstance(payload, dict) else None
        entry = models.AuditLogEntry(
            user_id=user_id,
            event_type=event_type,
            event_data=payload,
            reference=str(reference)[:128] if reference else None,
            timestamp=self._clock(),
        )
        session.add(entry)
        return entry

    def log_event(self, user_id: str | None, event_type: str, event_data: dict[str, Any] | None = None) -> None:
        """Append one audit entry in its own transaction."""
        with self.batch() as session:
            self.add_audit(session, user_id, event_type, event_data)

    def log_event_safe(self, user_id: str | None, event_type: str, event_data: dict[str, Any] | None = None) -> None:
        try:
            self.log_event(user_id, event_type, event_data)
        except Exception:
            logger.exception("Failed to append audit entry user_id=%s event_type=%s", user_id, event_type)

    def _subscriptions_in_retry(self, session: Session) -> list[models.Subscription]:
        return (
            session.query(models.Subscription)
            .filter(
                models.Subscription.status.in_(
                    (
                        SubscriptionStatus.PAYMENT_FAILED.value,
                        SubscriptionStatus.RETRY_SCHEDULED.value,
                        SubscriptionStatus.GRACE_PERIOD.value,
                    )
                ),
                models.Subscription.payment_retry.isnot(None),
            )
            .all()
        )

    def due_retries(self, now: datetime) -> list[str]:
        with self.reader() as session:
            due = []
            for subscription in self._subscriptions_in_retry(session):
                retry = subscription.payment_retry or {}
                if retry.get("status") != RetryStatus.RETRY_SCHEDULED.value:
                    continue
                next_retry = parse_datetime(retry.get("next_retry_date"))
                if next_retry and next_retry <= now:
                    due.append(subscription.user_id)
            return due

    def expired_grace_periods(self, now: datetime) -> list[str]:
        with self.reader() as session:
            expired = []
            for subscription in self._subscriptions_in_retry(session):
                retry = subscription.payment_retry or {}
                if retry.get("status") != RetryStatus.GRACE_PERIOD.value:
                    continue
                grace_end = parse_datetime(retry.get("grace_period_end"))
                if grace_end and grace_end <= now:
                    expired.append(subscription.user_id)
            return expired

    def expired_trials(self, now: datetime) -> list[str]:
        with self.reader() as session:
            trials = (
                session.query(models.Subscription)
                .filter(models.Subscription.status == SubscriptionStatus.TRIAL.value)
                .all()
            )
            expired = []
            for subscription in trials:
                trial_end = subscription.trial_end_date or subscription.end_date
                if trial_end and trial_end <= now:
                    expired.append(subscription.user_id)
            return expired

    def pending_unverified_webhooks(self) -> list[dict[str, Any]]:
        """``webhook_unverified`` entries that no ``webhook_reprocessed`` entry has resolved yet."""
        resolved = {
            (entry["event_data"] or {}).get("unverified_entry_id")
            for entry in self.audit_entries(event_type=AUDIT_WEBHOOK_REPROCESSED)
        }
        return [
            entry
            for entry in self.audit_entries(event_type=AUDIT_WEBHOOK_UNVERIFIED)
            if entry["id"] not in resolved
        ]
