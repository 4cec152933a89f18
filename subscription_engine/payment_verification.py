"""
Payment cross-validation.

Re-derives the truth of a payment from Paystack's own verification endpoint and checks it
against what the caller claims. Results are structured (every check with expected/actual),
never a bare boolean, and a gateway outage is reported as ``system_error`` so callers treat
the payment as not yet verified rather than rejected.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from subscription_engine.config import Settings
from subscription_engine.exceptions import GatewayError
from subscription_engine.gateway import PaystackClient
from subscription_engine.plans import SubscriptionPlan, expected_amount_minor
from subscription_engine.record_store import RecordStore
from subscription_engine.utils.dates import parse_datetime, utcnow

logger = logging.getLogger(__name__)

VERIFIED = "verified"
REJECTED = "rejected"
SYSTEM_ERROR = "system_error"
DUPLICATE = "duplicate"

AMOUNT_TOLERANCE_MINOR = 1
# Allowed drift between our clock and the gateway's when judging transaction age.
CLOCK_SKEW_MINUTES = 5
REASONABLE_MIN_MINOR = 100
REASONABLE_MAX_MINOR = 500000
SUCCESSFUL_GATEWAY_RESPONSES = {"successful", "approved"}

_REFERENCE_CHARS = re.compile(r"^[A-Za-z0-9_-]+$")
_REPETITIVE = re.compile(r"^(.+?)\1+$")
_SEQUENTIAL_PREFIXES = ("012", "123", "234", "345", "456", "567", "678", "789", "890", "901")


@dataclass
class CheckResult:
    check: str
    passed: bool
    message: str
    expected: Any = None
    actual: Any = None
    difference: int | None = None

    def as_dict(self) -> dict[str, Any]:
        data = {"check": self.check, "passed": self.passed, "message": self.message}
        if self.expected is not None:
            data["expected"] = self.expected
        if self.actual is not None:
            data["actual"] = self.actual
        if self.difference is not None:
            data["difference"] = self.difference
        return data


def _failed(checks: list[CheckResult]) -> list[CheckResult]:
    return [check for check in checks if not check.passed]


@dataclass
class TransactionVerification:
    outcome: str
    checks: list[CheckResult] = field(default_factory=list)
    transaction: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    system_error: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.outcome == VERIFIED

    @property
    def failed_checks(self) -> list[CheckResult]:
        return _failed(self.checks)

    def check(self, name: str) -> CheckResult | None:
        return next((item for item in self.checks if item.check == name), None)

    @property
    def summary(self) -> dict[str, Any]:
        transaction = self.transaction or {}
        return {
            "reference": transaction.get("reference"),
            "status": transaction.get("status"),
            "amount": transaction.get("amount"),
            "currency": transaction.get("currency"),
            "customer_email": (transaction.get("customer") or {}).get("email"),
            "gateway_response": transaction.get("gateway_response"),
            "created_at": transaction.get("created_at") or transaction.get("createdAt"),
        }


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    source: str | None = None
    original: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    check_failed: bool = False


@dataclass
class ReferenceValidation:
    reference: str | None
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not _failed(self.checks)

    @property
    def failed_checks(self) -> list[CheckResult]:
        return _failed(self.checks)


@dataclass
class AmountCrossValidation:
    results: list[CheckResult] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not _failed(self.results)


@dataclass
class PaymentVerification:
    outcome: str
    reference: str
    errors: list[str] = field(default_factory=list)
    reference_validation: ReferenceValidation | None = None
    duplicate_check: DuplicateCheck | None = None
    transaction_verification: TransactionVerification | None = None
    amount_validation: AmountCrossValidation | None = None

    @property
    def is_valid(self) -> bool:
        return self.outcome == VERIFIED

    @property
    def transaction(self) -> dict[str, Any] | None:
        if self.transaction_verification is None:
            return None
        return self.transaction_verification.transaction


def validate_transaction_reference(reference: Any, expected_pattern: str | None = None) -> ReferenceValidation:
    checks: list[CheckResult] = []
    is_string = isinstance(reference, str) and bool(reference)
    checks.append(
        CheckResult(
            "reference_format",
            is_string,
            "Reference format is valid" if is_string else "Reference must be a non-empty string",
        )
    )
    text = reference if is_string else ""

    length_ok = 8 <= len(text) <= 50
    checks.append(
        CheckResult(
            "reference_length",
            length_ok,
            "Reference length is acceptable"
            if length_ok
            else f"Reference length {len(text)} is invalid (expected 8-50 characters)",
            expected="8-50 characters",
            actual=len(text),
        )
    )

    chars_ok = bool(_REFERENCE_CHARS.match(text))
    checks.append(
        CheckResult(
            "reference_characters",
            chars_ok,
            "Reference contains valid characters"
            if chars_ok
            else "Reference contains invalid characters (only alphanumeric, underscore, hyphen allowed)",
        )
    )

    if expected_pattern:
        pattern_ok = bool(re.search(expected_pattern, text))
        checks.append(
            CheckResult(
                "reference_pattern",
                pattern_ok,
                "Reference matches expected pattern"
                if pattern_ok
                else f"Reference does not match expected pattern: {expected_pattern}",
                expected=expected_pattern,
                actual=text,
            )
        )

    unique_ok = bool(text) and not _REPETITIVE.match(text) and not text.startswith(_SEQUENTIAL_PREFIXES)
    checks.append(
        CheckResult(
            "reference_uniqueness",
            unique_ok,
            "Reference appears to be unique" if unique_ok else "Reference appears to be sequential or repetitive",
        )
    )
    return ReferenceValidation(reference=text or None, checks=checks)


def cross_validate_amount(
    gateway_amount: int,
    plan: SubscriptionPlan,
    client_amount: int | None = None,
    expected_amount: int | None = None,
) -> AmountCrossValidation:
    expected = expected_amount if expected_amount is not None else expected_amount_minor(plan)
    results = []

    plan_difference = abs(gateway_amount - expected)
    results.append(
        CheckResult(
            "plan_configuration",
            plan_difference <= AMOUNT_TOLERANCE_MINOR,
            "Amount matches plan configuration"
            if plan_difference <= AMOUNT_TOLERANCE_MINOR
            else f"Amount differs from plan by {plan_difference} minor units",
            expected=expected,
            actual=gateway_amount,
            difference=plan_difference,
        )
    )

    if client_amount is not None:
        client_difference = abs(gateway_amount - client_amount)
        results.append(
            CheckResult(
                "client_request",
                client_difference <= AMOUNT_TOLERANCE_MINOR,
                "Amount matches client request"
                if client_difference <= AMOUNT_TOLERANCE_MINOR
                else f"Amount differs from client request by {client_difference} minor units",
                expected=client_amount,
                actual=gateway_amount,
                difference=client_difference,
            )
        )

    reasonable = REASONABLE_MIN_MINOR <= gateway_amount <= REASONABLE_MAX_MINOR
    results.append(
        CheckResult(
            "reasonableness_check",
            reasonable,
            "Amount is within reasonable range"
            if reasonable
            else f"Amount {gateway_amount} is outside reasonable range ({REASONABLE_MIN_MINOR}-{REASONABLE_MAX_MINOR})",
            expected=f"{REASONABLE_MIN_MINOR}-{REASONABLE_MAX_MINOR}",
            actual=gateway_amount,
        )
    )

    return AmountCrossValidation(
        results=results,
        summary={
            "gateway_amount": gateway_amount,
            "expected_amount": expected,
            "plan_amount": str(plan.amount),
            "currency": plan.currency,
        },
    )


class PaymentCrossValidator:
    def __init__(
        self,
        client: PaystackClient,
        store: RecordStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self._clock = clock

    def verify_transaction(
        self,
        reference: str,
        expected_amount: int | None = None,
        expected_email: str | None = None,
    ) -> TransactionVerification:
        if not reference or not isinstance(reference, str):
            return TransactionVerification(
                outcome=REJECTED,
                error="Transaction reference is required",
                error_code="MISSING_REFERENCE",
            )

        try:
            response = self.client.verify_transaction(reference)
        except GatewayError as exc:
            logger.warning("Paystack verification unavailable for reference %s: %s", reference, exc)
            return TransactionVerification(
                outcome=SYSTEM_ERROR,
                error="Payment verification failed due to system error",
                error_code="VERIFICATION_SYSTEM_ERROR",
                system_error=str(exc),
            )

        transaction = response.get("data")
        if not response.get("status") or not isinstance(transaction, dict):
            logger.warning("Invalid Paystack verification response for reference %s", reference)
            return TransactionVerification(
                outcome=REJECTED,
                error=str(response.get("message") or "Invalid Paystack response"),
                error_code="INVALID_GATEWAY_RESPONSE",
            )

        checks = [
            self._status_check(transaction),
            *self._amount_checks(transaction, expected_amount),
            *self._email_checks(transaction, expected_email),
            self._reference_check(transaction, reference),
            self._currency_check(transaction),
            self._gateway_response_check(transaction),
            self._age_check(transaction),
        ]
        failed = _failed(checks)
        if failed:
            logger.warning(
                "Paystack verification failed checks for reference %s: %s",
                reference,
                [check.message for check in failed],
            )
            return TransactionVerification(
                outcome=REJECTED,
                checks=checks,
                transaction=transaction,
                error="Transaction verification failed",
                error_code="VERIFICATION_FAILED",
            )

        logger.info("Paystack verification passed all checks for reference %s", reference)
        return TransactionVerification(outcome=VERIFIED, checks=checks, transaction=transaction)

    def _status_check(self, transaction: dict[str, Any]) -> CheckResult:
        status = transaction.get("status")
        passed = status == "success"
        return CheckResult(
            "transaction_status",
            passed,
            "Transaction status is success" if passed else f"Transaction status is {status}, expected success",
            expected="success",
            actual=status,
        )

    def _amount_checks(self, transaction: dict[str, Any], expected_amount: int | None) -> list[CheckResult]:
        if expected_amount is None:
            return []
        try:
            actual = int(transaction.get("amount"))
        except (TypeError, ValueError):
            return [
                CheckResult(
                    "amount_validation",
                    False,
                    "Transaction amount is missing or not numeric",
                    expected=expected_amount,
                    actual=transaction.get("amount"),
                )
            ]
        difference = abs(actual - expected_amount)
        passed = difference <= AMOUNT_TOLERANCE_MINOR
        return [
            CheckResult(
                "amount_validation",
                passed,
                "Transaction amount matches expected amount"
                if passed
                else f"Amount mismatch: expected {expected_amount}, got {actual}",
                expected=expected_amount,
                actual=actual,
                difference=difference,
            )
        ]

    def _email_checks(self, transaction: dict[str, Any], expected_email: str | None) -> list[CheckResult]:
        if expected_email is None:
            return []
        actual = (transaction.get("customer") or {}).get("email")
        passed = bool(actual) and str(actual).strip().lower() == expected_email.strip().lower()
        return [
            CheckResult(
                "email_validation",
                passed,
                "Customer email matches expected email"
                if passed
                else f"Email mismatch: expected {expected_email}, got {actual}",
                expected=expected_email,
                actual=actual,
            )
        ]

    def _reference_check(self, transaction: dict[str, Any], reference: str) -> CheckResult:
        actual = transaction.get("reference")
        passed = actual == reference
        return CheckResult(
            "reference_validation",
            passed,
            "Transaction reference matches" if passed else f"Reference mismatch: expected {reference}, got {actual}",
            expected=reference,
            actual=actual,
        )

    def _currency_check(self, transaction: dict[str, Any]) -> CheckResult:
        expected = self.settings.currency
        actual = transaction.get("currency")
        passed = str(actual or "").upper() == expected
        return CheckResult(
            "currency_validation",
            passed,
            "Transaction currency is correct" if passed else f"Currency mismatch: expected {expected}, got {actual}",
            expected=expected,
            actual=actual,
        )

    def _gateway_response_check(self, transaction: dict[str, Any]) -> CheckResult:
        actual = transaction.get("gateway_response")
        passed = str(actual or "").strip().lower() in SUCCESSFUL_GATEWAY_RESPONSES
        return CheckResult(
            "gateway_response",
            passed,
            "Gateway response indicates success" if passed else f"Gateway response: {actual}",
            actual=actual,
        )

    def _age_check(self, transaction: dict[str, Any]) -> CheckResult:
        max_minutes = self.settings.transaction_max_age_minutes
        created_at = parse_datetime(transaction.get("created_at") or transaction.get("createdAt"))
        if created_at is None:
            return CheckResult(
                "transaction_age",
                False,
                "Transaction timestamp is missing or unreadable",
                expected=f"{max_minutes} minutes",
            )
        age_minutes = (self._clock() - created_at).total_seconds() / 60
        if age_minutes < -CLOCK_SKEW_MINUTES:
            return CheckResult(
                "transaction_age",
                False,
                f"Transaction timestamp is {round(-age_minutes)} minutes in the future",
                expected=f"{max_minutes} minutes",
                actual=f"{round(age_minutes)} minutes",
            )
        passed = age_minutes <= max_minutes
        return CheckResult(
            "transaction_age",
            passed,
            "Transaction age is acceptable"
            if passed
            else f"Transaction too old: {round(age_minutes)} minutes (max {max_minutes})",
            expected=f"{max_minutes} minutes",
            actual=f"{round(age_minutes)} minutes",
        )

    def check_duplicate_transaction(self, reference: str) -> DuplicateCheck:
        try:
            applied = self.store.find_applied_reference(reference)
            if applied:
                logger.warning("Duplicate transaction reference found in audit log: %s", reference)
                return DuplicateCheck(
                    is_duplicate=True,
                    source="audit_log",
                    original={
                        "user_id": applied["user_id"],
                        "timestamp": applied["timestamp"],
                        "event_type": applied["event_type"],
                    },
                    error="Transaction reference already processed",
                    error_code="DUPLICATE_REFERENCE",
                )

            subscription = self.store.find_subscription_by_reference(reference)
            if subscription:
                logger.warning("Duplicate transaction reference found in subscriptions: %s", reference)
                return DuplicateCheck(
                    is_duplicate=True,
                    source="subscriptions",
                    original={
                        "user_id": subscription["user_id"],
                        "created_at": subscription["created_at"],
                        "status": subscription["status"],
                    },
                    error="Transaction reference already used for subscription",
                    error_code="DUPLICATE_SUBSCRIPTION_REFERENCE",
                )
        except Exception:
            logger.exception("Duplicate check failed for reference %s", reference)
            return DuplicateCheck(
                is_duplicate=False,
                error="Duplicate check failed due to system error",
                error_code="DUPLICATE_CHECK_ERROR",
                check_failed=True,
            )

        return DuplicateCheck(is_duplicate=False)

    def comprehensive_verification(
        self,
        reference: str,
        plan: SubscriptionPlan,
        user_email: str,
        user_id: str,
        client_amount: int | None = None,
        expected_amount: int | None = None,
    ) -> PaymentVerification:
        expected = expected_amount if expected_amount is not None else expected_amount_minor(plan)
        result = PaymentVerification(outcome=VERIFIED, reference=reference)

        result.reference_validation = validate_transaction_reference(reference)
        if not result.reference_validation.is_valid:
            result.outcome = REJECTED
            result.errors.append("Invalid transaction reference format")
            self._log_verification(user_id, plan, result)
            return result

        result.duplicate_check = self.check_duplicate_transaction(reference)
        if result.duplicate_check.check_failed:
            # An unanswered duplicate lookup is not proof of novelty.
            result.outcome = SYSTEM_ERROR
            result.errors.append("Duplicate check unavailable")
            self._log_verification(user_id, plan, result)
            return result
        if result.duplicate_check.is_duplicate:
            result.outcome = DUPLICATE
            result.errors.append("Duplicate transaction reference")
            return result

        result.transaction_verification = self.verify_transaction(reference, expected, user_email)
        if result.transaction_verification.outcome == SYSTEM_ERROR:
            result.outcome = SYSTEM_ERROR
            result.errors.append("Payment verification system error")
            self._log_verification(user_id, plan, result)
            return result
        if not result.transaction_verification.is_valid:
            result.outcome = REJECTED
            result.errors.append("Paystack verification failed")

        transaction = result.transaction_verification.transaction
        if result.transaction_verification.is_valid and transaction:
            result.amount_validation = cross_validate_amount(
                int(transaction["amount"]),
                plan,
                client_amount=client_amount,
                expected_amount=expected,
            )
            if not result.amount_validation.is_valid:
                result.outcome = REJECTED
                result.errors.append("Payment amount validation failed")

        self._log_verification(user_id, plan, result)
        return result

    def _log_verification(self, user_id: str, plan: SubscriptionPlan, result: PaymentVerification) -> None:
        if result.is_valid:
            self.store.log_event_safe(
                user_id,
                "payment_verification_success",
                {
                    "reference": result.reference,
                    "plan_id": plan.id,
                    "amount": (result.transaction or {}).get("amount"),
                },
            )
            return

        failed_checks = []
        if result.transaction_verification is not None:
            failed_checks = [check.as_dict() for check in result.transaction_verification.failed_checks]
        self.store.log_event_safe(
            user_id,
            "payment_verification_failed",
            {
                "reference": result.reference,
                "plan_id": plan.id,
                "outcome": result.outcome,
                "errors": result.errors,
                "failed_checks": failed_checks,
            },
        )
