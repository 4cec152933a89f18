"""
Subscription lifecycle: maps verified gateway events and user actions onto atomic updates.

Every payment-bearing path follows the same order: duplicate-reference check, cross-verification
with the gateway, then exactly one ``apply_update``. Anything short of a verified, novel payment
is reported back as an outcome and leaves the records untouched.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from subscription_engine.atomic import (
    OP_SUBSCRIPTION_CANCELLATION,
    OP_SUBSCRIPTION_CREATION,
    OP_SUBSCRIPTION_LINKED,
    OP_SUBSCRIPTION_RENEWAL,
    OP_TRIAL_CONVERSION,
    OP_TRIAL_CREATION,
    OP_TRIAL_EXPIRATION,
    AtomicSubscriptionUpdater,
)
from subscription_engine.config import Settings
from subscription_engine.exceptions import AtomicUpdateError, GatewayError, RecordNotFoundError
from subscription_engine.gateway import PaystackClient, new_reference
from subscription_engine.payment_verification import (
    DUPLICATE,
    REJECTED,
    SYSTEM_ERROR,
    PaymentCrossValidator,
)
from subscription_engine.plans import (
    TRIAL_VERIFICATION_AMOUNT,
    SubscriptionPlan,
    billing_period_end,
    expected_amount_minor,
    get_plan,
    get_plan_by_code,
)
from subscription_engine.record_store import AUDIT_WEBHOOK_REPROCESSED, AUDIT_WEBHOOK_UNVERIFIED, RecordStore
from subscription_engine.request_validation import RequestValidation
from subscription_engine.retry_scheduler import PaymentRetryScheduler, in_retry
from subscription_engine.states import AccountStatus, Plan, SubscriptionStatus
from subscription_engine.utils.dates import parse_datetime, utcnow
from subscription_engine.webhook_security import sanitize_webhook_data

logger = logging.getLogger(__name__)

STATUS_APPLIED = "applied"
STATUS_DUPLICATE = "duplicate"
STATUS_UNVERIFIED = "unverified"
STATUS_REJECTED = "rejected"
STATUS_IGNORED = "ignored"
STATUS_USER_NOT_FOUND = "user_not_found"
STATUS_FAILED = "failed"
STATUS_ALREADY_APPLIED = "already_applied"

TRIAL_CONVERTED = "converted"
TRIAL_CANCELLED = "cancelled"
TRIAL_EXPIRED = "expired"
TRIAL_UNKNOWN = "unknown"
TRIAL_SKIPPED = "skipped"

TRIAL_REFERENCE_PREFIX = "trial"
CANCELLATION_EVENTS = {"subscription.disable", "subscription.not_renewing", "subscription.deactivate"}
CANCELLABLE_STATUSES = {
    AccountStatus.ACTIVE.value,
    AccountStatus.TRIAL.value,
    AccountStatus.TRIAL_INCOMPLETE.value,
    AccountStatus.PAYMENT_FAILED.value,
}


@dataclass
class WebhookOutcome:
    processed: bool
    status: str
    reason: str | None = None
    user_id: str | None = None
    operation: str | None = None
    # Set once an unverified event has been stored for reprocessing.
    queued: bool = False


@dataclass
class InitializationResult:
    authorization_url: str | None
    access_code: str | None
    reference: str
    plan_id: str
    amount: int
    is_trial: bool = False


@dataclass
class CallbackResult:
    status: str
    user_id: str
    operation: str | None = None
    errors: list[str] = field(default_factory=list)
    account: dict[str, Any] | None = None
    subscription: dict[str, Any] | None = None


@dataclass
class CancellationResult:
    cancelled: bool
    message: str
    gateway_disabled: bool | None = None


def _metadata(data: dict[str, Any]) -> dict[str, Any]:
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return {}
    return metadata if isinstance(metadata, dict) else {}


def _customer(data: dict[str, Any]) -> dict[str, Any]:
    customer = data.get("customer")
    if not isinstance(customer, dict):
        customer = (data.get("subscription") or {}).get("customer") if isinstance(data.get("subscription"), dict) else None
    return customer if isinstance(customer, dict) else {}


def _subscription_code(data: dict[str, Any]) -> str | None:
    subscription = data.get("subscription")
    if isinstance(subscription, dict) and subscription.get("subscription_code"):
        return subscription["subscription_code"]
    return data.get("subscription_code")


def _payment_reference(data: dict[str, Any]) -> str | None:
    reference = data.get("reference")
    if not reference and isinstance(data.get("transaction"), dict):
        reference = data["transaction"].get("reference")
    return str(reference).strip() if reference else None


def _is_trial_reference(reference: str) -> bool:
    return reference.startswith(f"{TRIAL_REFERENCE_PREFIX}_")


class SubscriptionLifecycleService:
    def __init__(
        self,
        store: RecordStore,
        updater: AtomicSubscriptionUpdater,
        verifier: PaymentCrossValidator,
        scheduler: PaymentRetryScheduler,
        client: PaystackClient,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.updater = updater
        self.verifier = verifier
        self.scheduler = scheduler
        self.client = client
        self.settings = settings
        self._clock = clock

    # Webhooks

    def handle_webhook_event(self, payload: dict[str, Any]) -> WebhookOutcome:
        outcome = self._dispatch(payload)
        if outcome.status == STATUS_UNVERIFIED:
            outcome.queued = self._queue_unverified(payload, outcome)
        return outcome

    def _dispatch(self, payload: dict[str, Any]) -> WebhookOutcome:
        event = payload.get("event")
        data = payload.get("data") or {}
        logger.info("Processing webhook event %s", event)

        try:
            if event == "charge.success":
                return self._handle_charge_success(data)
            if event == "invoice.create":
                if data.get("paid") or str(data.get("status") or "").lower() == "success":
                    return self._handle_charge_success(data)
                return WebhookOutcome(processed=False, status=STATUS_IGNORED, reason="invoice_not_paid")
            if event in {"charge.failed", "invoice.payment_failed"}:
                return self._handle_charge_failed(data)
            if event == "subscription.create":
                return self._handle_subscription_create(data)
            if event in CANCELLATION_EVENTS:
                return self._handle_subscription_cancelled(event, data)
        except RecordNotFoundError as exc:
            logger.warning("Webhook %s references missing records: %s", event, exc)
            return WebhookOutcome(processed=False, status=STATUS_USER_NOT_FOUND, reason=str(exc))
        except AtomicUpdateError as exc:
            logger.error("Webhook %s could not be applied: %s", event, exc)
            return WebhookOutcome(processed=False, status=STATUS_FAILED, reason=str(exc), user_id=exc.user_id)

        return WebhookOutcome(processed=False, status=STATUS_IGNORED, reason="unhandled_event")

    def _queue_unverified(self, payload: dict[str, Any], outcome: WebhookOutcome) -> bool:
        """Store an event we acknowledged but could not verify; ``False`` if that write failed."""
        data = payload.get("data") or {}
        try:
            self.store.log_event(
                outcome.user_id,
                AUDIT_WEBHOOK_UNVERIFIED,
                {
                    "reference": _payment_reference(data),
                    "event": payload.get("event"),
                    "error_code": outcome.reason,
                    "payload": {"event": payload.get("event"), "data": sanitize_webhook_data(data)},
                },
            )
        except Exception:
            logger.exception("Could not store unverified webhook %s for reprocessing", payload.get("event"))
            return False
        logger.warning("Webhook %s left unverified (%s); queued for reprocessing", payload.get("event"), outcome.reason)
        return True

    def pending_unverified_events(self) -> list[dict[str, Any]]:
        return self.store.pending_unverified_webhooks()

    def reprocess_unverified(self, entry: dict[str, Any]) -> WebhookOutcome:
        """Re-run a stored unverified event. It stays pending while it is still unverified."""
        payload = (entry.get("event_data") or {}).get("payload") or {}
        outcome = self._dispatch(payload)
        if outcome.status == STATUS_UNVERIFIED:
            logger.warning("Webhook audit entry %s is still unverified (%s)", entry.get("id"), outcome.reason)
            return outcome

        self.store.log_event(
            outcome.user_id,
            AUDIT_WEBHOOK_REPROCESSED,
            {
                "unverified_entry_id": entry.get("id"),
                "reference": entry.get("reference"),
                "event": payload.get("event"),
                "status": outcome.status,
                "operation": outcome.operation,
            },
        )
        logger.info("Webhook audit entry %s reprocessed: %s", entry.get("id"), outcome.status)
        return outcome

    def _resolve_user_id(self, data: dict[str, Any]) -> str | None:
        account = self.store.find_account_by_email(_customer(data).get("email"))
        if account is None:
            account = self.store.find_account_by_subscription_code(_subscription_code(data))
        if account is not None:
            return account["user_id"]
        # First payment for a user whose callback has not landed yet.
        user_id = _metadata(data).get("userId")
        return str(user_id) if user_id else None

    def _handle_charge_success(self, data: dict[str, Any]) -> WebhookOutcome:
        reference = _payment_reference(data)
        if not reference:
            return WebhookOutcome(processed=False, status=STATUS_IGNORED, reason="missing_reference")

        duplicate = self.verifier.check_duplicate_transaction(reference)
        if duplicate.check_failed:
            logger.warning("Duplicate check unavailable for reference %s; leaving event unapplied", reference)
            return WebhookOutcome(processed=False, status=STATUS_UNVERIFIED, reason=duplicate.error_code)
        if duplicate.is_duplicate:
            logger.info("Reference %s already applied; acknowledging duplicate delivery", reference)
            return WebhookOutcome(
                processed=False,
                status=STATUS_DUPLICATE,
                reason=duplicate.error_code,
                user_id=(duplicate.original or {}).get("user_id"),
            )

        user_id = self._resolve_user_id(data)
        if not user_id:
            logger.warning("No account found for charge %s (%s)", reference, _customer(data).get("email"))
            self.store.log_event_safe(None, "webhook_user_not_found", {"reference": reference})
            return WebhookOutcome(processed=False, status=STATUS_USER_NOT_FOUND, reason="no_matching_account")

        account = self.store.get_account(user_id)
        subscription = self.store.get_subscription(user_id)
        metadata = _metadata(data)
        is_trial = bool(metadata.get("isTrialSetup")) or _is_trial_reference(reference)
        plan = (
            get_plan(metadata.get("planId"))
            or get_plan_by_code((data.get("plan") or {}).get("plan_code") if isinstance(data.get("plan"), dict) else None)
            or get_plan((subscription or {}).get("plan_id"))
        )
        if plan is None:
            logger.warning("Charge %s for user %s does not match a known plan", reference, user_id)
            return WebhookOutcome(processed=False, status=STATUS_REJECTED, reason="unknown_plan", user_id=user_id)

        email = (account or {}).get("email") or _customer(data).get("email")
        verification = self.verifier.verify_transaction(reference, self._expected_amount(plan, is_trial), email)
        if verification.outcome == SYSTEM_ERROR:
            return WebhookOutcome(
                processed=False,
                status=STATUS_UNVERIFIED,
                reason=verification.error_code,
                user_id=user_id,
            )
        if verification.outcome == REJECTED:
            self.store.log_event_safe(
                user_id,
                "payment_verification_failed",
                {
                    "reference": reference,
                    "source": "webhook",
                    "error_code": verification.error_code,
                    "failed_checks": [check.as_dict() for check in verification.failed_checks],
                },
            )
            return WebhookOutcome(
                processed=False,
                status=STATUS_REJECTED,
                reason=verification.error_code,
                user_id=user_id,
            )

        operation = self._apply_verified_payment(
            user_id, email, plan, reference, verification.transaction, is_trial, account, subscription
        )
        return WebhookOutcome(processed=True, status=STATUS_APPLIED, user_id=user_id, operation=operation)

    def _handle_charge_failed(self, data: dict[str, Any]) -> WebhookOutcome:
        user_id = self._resolve_user_id(data)
        if not user_id:
            return WebhookOutcome(processed=False, status=STATUS_USER_NOT_FOUND, reason="no_matching_account")

        subscription = self.store.get_subscription(user_id)
        if subscription is None:
            return WebhookOutcome(processed=False, status=STATUS_IGNORED, reason="no_subscription", user_id=user_id)

        reference = _payment_reference(data)
        if in_retry(subscription) or subscription.get("payment_retry"):
            self.store.log_event_safe(
                user_id,
                "payment_failure_duplicate",
                {"failed_reference": reference, "retry_state": subscription.get("payment_retry")},
            )
            return WebhookOutcome(
                processed=False,
                status=STATUS_DUPLICATE,
                reason="failure_episode_open",
                user_id=user_id,
            )
        if subscription.get("status") not in {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value}:
            return WebhookOutcome(
                processed=False,
                status=STATUS_IGNORED,
                reason="subscription_not_active",
                user_id=user_id,
            )

        error = data.get("gateway_response") or data.get("message") or "charge_failed"
        self.scheduler.record_failure(user_id, error=str(error), reference=reference)
        return WebhookOutcome(processed=True, status=STATUS_APPLIED, user_id=user_id, operation="payment_failure")

    def _handle_subscription_create(self, data: dict[str, Any]) -> WebhookOutcome:
        user_id = self._resolve_user_id(data)
        if not user_id:
            return WebhookOutcome(processed=False, status=STATUS_USER_NOT_FOUND, reason="no_matching_account")

        customer = _customer(data)
        links = {
            "subscription_code": _subscription_code(data),
            "customer_code": customer.get("customer_code"),
            "external_subscription_id": str(data["id"]) if data.get("id") is not None else None,
        }
        links = {key: value for key, value in links.items() if value}
        if not links:
            return WebhookOutcome(processed=False, status=STATUS_IGNORED, reason="no_subscription_details", user_id=user_id)

        subscription_delta = dict(links)
        if data.get("email_token"):
            subscription_delta["email_token"] = data["email_token"]
        if parse_datetime(data.get("next_payment_date")):
            subscription_delta["next_payment_date"] = data["next_payment_date"]
        subscription_delta["provider_subscription"] = sanitize_webhook_data(data)

        self.updater.apply_update(user_id, links, subscription_delta, OP_SUBSCRIPTION_LINKED)
        return WebhookOutcome(processed=True, status=STATUS_APPLIED, user_id=user_id, operation=OP_SUBSCRIPTION_LINKED)

    def _handle_subscription_cancelled(self, event: str, data: dict[str, Any]) -> WebhookOutcome:
        user_id = self._resolve_user_id(data)
        if not user_id:
            logger.error("No matching user found for cancellation event %s", event)
            return WebhookOutcome(processed=False, status=STATUS_USER_NOT_FOUND, reason="no_matching_account")

        account = self.store.get_account(user_id)
        if account is None:
            return WebhookOutcome(processed=False, status=STATUS_USER_NOT_FOUND, reason="no_matching_account")
        subscription = self.store.get_subscription(user_id)
        if account.get("subscription_status") == AccountStatus.CANCELLED.value and (
            subscription is None or subscription.get("status") == SubscriptionStatus.CANCELLED.value
        ):
            return WebhookOutcome(processed=False, status=STATUS_DUPLICATE, reason="already_cancelled", user_id=user_id)

        self._apply_cancellation(user_id, subscription, event)
        return WebhookOutcome(
            processed=True,
            status=STATUS_APPLIED,
            user_id=user_id,
            operation=OP_SUBSCRIPTION_CANCELLATION,
        )

    # Payments

    def _expected_amount(self, plan: SubscriptionPlan, is_trial: bool) -> int:
        if is_trial:
            return int(TRIAL_VERIFICATION_AMOUNT * 100)
        return expected_amount_minor(plan)

    def _apply_verified_payment(
        self,
        user_id: str,
        email: str | None,
        plan: SubscriptionPlan,
        reference: str,
        transaction: dict[str, Any] | None,
        is_trial: bool,
        account: dict[str, Any] | None,
        subscription: dict[str, Any] | None,
    ) -> str:
        """Apply one verified payment; returns the operation used."""
        transaction = transaction or {}
        if subscription is not None and not is_trial and in_retry(subscription):
            self.scheduler.record_payment_success(user_id, reference, sanitize_webhook_data(transaction))
            return "payment_retry_success"

        now = self._clock()
        customer = _customer(transaction)
        authorization = transaction.get("authorization") if isinstance(transaction.get("authorization"), dict) else {}
        account_delta: dict[str, Any] = {
            "email": email,
            "subscription_plan": plan.id,
            "subscription_reference": reference,
        }
        subscription_delta: dict[str, Any] = {
            "plan_id": plan.id,
            "reference": reference,
            "currency": transaction.get("currency") or plan.currency,
            "provider_payload": sanitize_webhook_data(transaction),
        }
        if customer.get("customer_code"):
            account_delta["customer_code"] = customer["customer_code"]
            subscription_delta["customer_code"] = customer["customer_code"]
        if authorization.get("authorization_code") and authorization.get("reusable", True):
            subscription_delta["authorization_code"] = authorization["authorization_code"]

        current_status = (subscription or {}).get("status")
        if is_trial:
            operation = OP_TRIAL_CREATION
            trial_end = now + timedelta(days=self.settings.trial_days)
            account_delta.update(
                {
                    "plan": Plan.PREMIUM.value,
                    "subscription_status": AccountStatus.TRIAL.value,
                    "trial_start_date": now,
                    "trial_end_date": trial_end,
                    "subscription_end": trial_end,
                }
            )
            subscription_delta.update(
                {
                    "status": SubscriptionStatus.TRIAL.value,
                    "amount": expected_amount_minor(plan),
                    "trial_start_date": now,
                    "trial_end_date": trial_end,
                    "end_date": trial_end,
                }
            )
        else:
            if current_status == SubscriptionStatus.TRIAL.value:
                operation = OP_TRIAL_CONVERSION
                period_start = now
                account_delta["trial_end_date"] = now
                subscription_delta["trial_end_date"] = now
            elif current_status == SubscriptionStatus.ACTIVE.value:
                operation = OP_SUBSCRIPTION_RENEWAL
                current_end = parse_datetime(subscription.get("end_date"))
                period_start = max(now, current_end) if current_end else now
            else:
                operation = OP_SUBSCRIPTION_CREATION
                period_start = now

            period_end = billing_period_end(plan, period_start)
            account_delta.update(
                {
                    "plan": Plan.PREMIUM.value,
                    "subscription_status": AccountStatus.ACTIVE.value,
                    "subscription_end": period_end,
                }
            )
            subscription_delta.update(
                {
                    "status": SubscriptionStatus.ACTIVE.value,
                    "amount": int(transaction.get("amount") or expected_amount_minor(plan)),
                    "end_date": period_end,
                    "last_payment_date": now,
                }
            )
            if operation != OP_SUBSCRIPTION_RENEWAL:
                account_delta["subscription_start"] = now
                subscription_delta["start_date"] = now

        self.updater.apply_update(
            user_id,
            {key: value for key, value in account_delta.items() if value is not None},
            subscription_delta,
            operation,
            expected_versions={
                "account": (account or {}).get("version", 0),
                "subscription": (subscription or {}).get("version", 0),
            },
        )
        return operation

    def initialize_subscription(self, validation: RequestValidation, trial: bool = False) -> InitializationResult:
        if not validation.is_valid or validation.user is None or validation.plan is None:
            raise ValueError("initialize_subscription requires a successful request validation")

        user = validation.user
        plan = validation.plan
        amount = self._expected_amount(plan, trial)
        reference = new_reference(TRIAL_REFERENCE_PREFIX if trial else "sub")
        metadata = dict(validation.metadata)
        metadata.update({"userId": user["uid"], "planId": plan.id, "isTrialSetup": trial})

        response = self.client.initialize_transaction(
            email=user["email"],
            amount_minor=amount,
            plan_code=None if trial else plan.plan_code,
            callback_url=f"{self.settings.app_url}/subscription/{'trial/' if trial else ''}callback",
            metadata=metadata,
            reference=reference,
        )
        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        if not response.get("status") or not data:
            raise GatewayError(str(response.get("message") or "Paystack initialization failed"))

        self.store.log_event_safe(
            user["uid"],
            "subscription_initialized",
            {"plan_id": plan.id, "amount": amount, "is_trial": trial, "initialized_reference": reference},
        )
        return InitializationResult(
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
            reference=data.get("reference") or reference,
            plan_id=plan.id,
            amount=amount,
            is_trial=trial,
        )

    def verify_callback(self, user_id: str, email: str, reference: str, plan_id: str) -> CallbackResult:
        plan = get_plan(plan_id)
        if plan is None:
            return CallbackResult(status=STATUS_REJECTED, user_id=user_id, errors=["PLAN_NOT_FOUND"])

        account = self.store.get_account(user_id)
        subscription = self.store.get_subscription(user_id)
        is_trial = _is_trial_reference(reference)
        verification = self.verifier.comprehensive_verification(
            reference,
            plan,
            email,
            user_id,
            expected_amount=self._expected_amount(plan, is_trial),
        )

        if verification.outcome == DUPLICATE:
            original = (verification.duplicate_check.original if verification.duplicate_check else None) or {}
            status = STATUS_ALREADY_APPLIED if original.get("user_id") == user_id else STATUS_DUPLICATE
            return self._callback_result(status, user_id, errors=verification.errors)
        if verification.outcome == SYSTEM_ERROR:
            return self._callback_result(STATUS_UNVERIFIED, user_id, errors=verification.errors)
        if verification.outcome == REJECTED:
            return self._callback_result(STATUS_REJECTED, user_id, errors=verification.errors)

        owner = _metadata(verification.transaction or {}).get("userId")
        if owner and str(owner) != user_id:
            logger.warning("Reference %s was initialized for %s but verified by %s", reference, owner, user_id)
            return self._callback_result(STATUS_REJECTED, user_id, errors=["Transaction belongs to another user"])

        operation = self._apply_verified_payment(
            user_id, email, plan, reference, verification.transaction, is_trial, account, subscription
        )
        return self._callback_result(STATUS_APPLIED, user_id, operation=operation)

    def _callback_result(
        self,
        status: str,
        user_id: str,
        operation: str | None = None,
        errors: list[str] | None = None,
    ) -> CallbackResult:
        return CallbackResult(
            status=status,
            user_id=user_id,
            operation=operation,
            errors=errors or [],
            account=self.store.get_account(user_id),
            subscription=self.store.get_subscription(user_id),
        )

    # Cancellation

    def cancel(self, user_id: str, reason: str = "user_requested") -> CancellationResult:
        account = self.store.get_account(user_id)
        if account is None:
            raise RecordNotFoundError(f"Account not found: {user_id}")
        if account.get("subscription_status") not in CANCELLABLE_STATUSES:
            return CancellationResult(cancelled=False, message="No active subscription found")

        subscription = self.store.get_subscription(user_id)
        gateway_disabled = None
        code = (subscription or {}).get("subscription_code")
        token = (subscription or {}).get("email_token")
        if code and token and self.client.configured:
            try:
                response = self.client.disable_subscription(code, token)
                gateway_disabled = bool(response.get("status"))
            except GatewayError as exc:
                logger.warning("Could not disable Paystack subscription %s for user %s: %s", code, user_id, exc)
                gateway_disabled = False

        self._apply_cancellation(user_id, subscription, reason)
        return CancellationResult(
            cancelled=True,
            message="Subscription cancelled",
            gateway_disabled=gateway_disabled,
        )

    def _apply_cancellation(self, user_id: str, subscription: dict[str, Any] | None, reason: str) -> None:
        now = self._clock()
        subscription_delta = None
        if subscription is not None:
            subscription_delta = {
                "status": SubscriptionStatus.CANCELLED.value,
                "cancellation_date": now,
                "cancellation_reason": reason,
                "payment_retry": None,
            }
        self.updater.cancel_subscription(
            user_id,
            {
                "plan": Plan.FREE.value,
                "subscription_status": AccountStatus.CANCELLED.value,
                "cancellation_date": now,
            },
            subscription_delta,
        )

    # Trial expiry

    def expired_trials(self, now: datetime | None = None) -> list[str]:
        return self.store.expired_trials(now or self._clock())

    def expire_trial(self, user_id: str) -> str:
        """
        Settle a trial whose end date has passed.

        With a linked Paystack subscription the gateway decides: ``active`` converts the trial,
        anything else cancels it. Without one the trial simply expires. When Paystack cannot be
        reached nothing is written and the trial is picked up again on the next run.
        """
        subscription = self.store.get_subscription(user_id)
        if subscription is None or subscription.get("status") != SubscriptionStatus.TRIAL.value:
            return TRIAL_SKIPPED
        account = self.store.get_account(user_id)
        expected_versions = {
            "account": (account or {}).get("version", 0),
            "subscription": subscription.get("version"),
        }

        code = subscription.get("subscription_code") or (account or {}).get("subscription_code")
        if not code:
            logger.info("Trial for user %s ended without a Paystack subscription", user_id)
            self._end_trial(
                user_id,
                AccountStatus.EXPIRED.value,
                SubscriptionStatus.EXPIRED.value,
                "trial_expired",
                expected_versions,
            )
            return TRIAL_EXPIRED

        try:
            response = self.client.fetch_subscription(code)
        except GatewayError as exc:
            logger.warning("Could not verify Paystack subscription %s for user %s: %s", code, user_id, exc)
            self.store.log_event_safe(
                user_id,
                "trial_expiration_unverified",
                {"subscription_code": code, "error": str(exc)},
            )
            return TRIAL_UNKNOWN

        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        gateway_status = str(data.get("status") or "").lower() if response.get("status") else ""
        if gateway_status == "active":
            now = self._clock()
            period_end = billing_period_end(get_plan(subscription.get("plan_id")), now)
            self.updater.apply_update(
                user_id,
                {
                    "plan": Plan.PREMIUM.value,
                    "subscription_status": AccountStatus.ACTIVE.value,
                    "trial_end_date": now,
                    "subscription_start": now,
                    "subscription_end": period_end,
                },
                {
                    "status": SubscriptionStatus.ACTIVE.value,
                    "trial_end_date": now,
                    "start_date": now,
                    "end_date": period_end,
                    "first_billing_date": now,
                },
                OP_TRIAL_CONVERSION,
                expected_versions=expected_versions,
            )
            logger.info("Trial for user %s converted to an active subscription", user_id)
            return TRIAL_CONVERTED

        logger.info("Paystack subscription %s is %s; cancelling trial for user %s", code, gateway_status or "missing", user_id)
        self._end_trial(
            user_id,
            AccountStatus.CANCELLED.value,
            SubscriptionStatus.CANCELLED.value,
            f"paystack_subscription_{gateway_status or 'missing'}",
            expected_versions,
        )
        return TRIAL_CANCELLED

    def _end_trial(
        self,
        user_id: str,
        account_status: str,
        subscription_status: str,
        reason: str,
        expected_versions: dict[str, int | None],
    ) -> None:
        now = self._clock()
        self.updater.apply_update(
            user_id,
            {
                "plan": Plan.FREE.value,
                "subscription_status": account_status,
                "trial_end_date": now,
                "cancellation_date": now,
            },
            {
                "status": subscription_status,
                "trial_end_date": now,
                "cancellation_date": now,
                "cancellation_reason": reason,
            },
            OP_TRIAL_EXPIRATION,
            expected_versions=expected_versions,
        )
