"""
Validation and sanitization of user-initiated subscription requests.
"""
import logging
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from email_validator import EmailNotValidError, validate_email

from subscription_engine.plans import SubscriptionPlan, available_plan_ids, expected_amount_minor, get_plan
from subscription_engine.record_store import RecordStore

logger = logging.getLogger(__name__)

MIN_UID_LENGTH = 10
AMOUNT_TOLERANCE_MINOR = 1
ALLOWED_METADATA_KEYS = ("userId", "planId", "source", "testMode")
DANGEROUS_KEYS = {"__proto__", "constructor", "prototype"}

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JAVASCRIPT_URI = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)
_UNSAFE_CHARS = re.compile(r"[<>'\"]")


@dataclass
class FieldError:
    field: str
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data = {"field": self.field, "code": self.code, "message": self.message}
        data.update(self.details)
        return data


@dataclass
class RequestValidation:
    errors: list[FieldError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    plan: SubscriptionPlan | None = None
    amount: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    user: dict[str, Any] | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


def sanitize_plan_id(value: Any) -> str:
    text = value if isinstance(value, str) else str(value)
    for pattern in (_SCRIPT_BLOCK, _JAVASCRIPT_URI, _EVENT_HANDLER, _UNSAFE_CHARS):
        text = pattern.sub("", text)
    return text.strip().upper()


def parse_amount(value: Any) -> int | None:
    """Positive amount in minor units, rounded to the nearest unit; ``None`` when unusable."""
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def find_dangerous_keys(value: Any, path: str = "") -> list[str]:
    found = []
    if isinstance(value, dict):
        for key, item in value.items():
            key_path = f"{path}.{key}" if path else str(key)
            if key in DANGEROUS_KEYS:
                found.append(key_path)
                continue
            found.extend(find_dangerous_keys(item, key_path))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            found.extend(find_dangerous_keys(item, f"{path}[{index}]"))
    return found


def sanitize_metadata(metadata: Any) -> dict[str, Any]:
    if not isinstance(metadata, dict):
        return {}
    cleaned = {}
    for key in ALLOWED_METADATA_KEYS:
        value = metadata.get(key)
        if isinstance(value, str):
            cleaned[key] = value.strip()
        elif isinstance(value, (bool, int, float)):
            cleaned[key] = value
    return cleaned


def _caller_value(caller: Any, name: str) -> Any:
    if caller is None:
        return None
    if isinstance(caller, dict):
        return caller.get(name)
    return getattr(caller, name, None)


class SubscriptionRequestValidator:
    def __init__(self, store: RecordStore | None = None) -> None:
        self.store = store

    def validate(
        self,
        caller: Any,
        body: Any,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> RequestValidation:
        result = RequestValidation()
        result.user = self._validate_caller(caller, result)

        if not isinstance(body, dict):
            result.errors.append(FieldError("body", "INVALID_REQUEST_FORMAT", "Invalid request data format"))
            self._audit(caller, result, ip, user_agent)
            return result

        result.warnings.extend(f"Removed dangerous field: {path}" for path in find_dangerous_keys(body))

        result.plan = self._validate_plan(body.get("planId"), result)

        if body.get("amount") is not None:
            result.amount = parse_amount(body.get("amount"))
            if result.amount is None:
                result.errors.append(
                    FieldError("amount", "INVALID_AMOUNT_FORMAT", "Payment amount must be a positive number")
                )
            elif result.plan is not None:
                self._validate_amount(result.amount, result.plan, result)

        if "metadata" in body:
            if body["metadata"] is not None and not isinstance(body["metadata"], dict):
                result.warnings.append("metadata ignored: must be an object")
            result.metadata = sanitize_metadata(body.get("metadata"))

        if result.warnings:
            logger.warning("Sanitization warnings: %s", result.warnings)
        self._audit(caller, result, ip, user_agent)
        return result

    def _validate_caller(self, caller: Any, result: RequestValidation) -> dict[str, Any] | None:
        uid = _caller_value(caller, "uid")
        email = _caller_value(caller, "email")
        if not uid or not email:
            missing = [name for name, value in (("uid", uid), ("email", email)) if not value]
            result.errors.append(
                FieldError(
                    "user",
                    "AUTHENTICATION_REQUIRED" if caller is None else "INCOMPLETE_AUTHENTICATION",
                    f"User authentication incomplete: missing {', '.join(missing)}",
                )
            )
            return None

        try:
            validate_email(str(email), check_deliverability=False)
        except EmailNotValidError:
            result.errors.append(FieldError("email", "INVALID_EMAIL_FORMAT", "Invalid email format"))
            return None

        if not isinstance(uid, str) or len(uid) < MIN_UID_LENGTH:
            result.errors.append(FieldError("uid", "INVALID_USER_ID_FORMAT", "Invalid user ID format"))
            return None

        return {
            "uid": uid,
            "email": str(email),
            "display_name": _caller_value(caller, "display_name"),
        }

    def _validate_plan(self, raw_plan_id: Any, result: RequestValidation) -> SubscriptionPlan | None:
        if raw_plan_id is None or raw_plan_id == "":
            result.errors.append(
                FieldError("planId", "INVALID_PLAN_ID_FORMAT", "Plan ID is required and must be a string")
            )
            return None
        if not isinstance(raw_plan_id, str):
            result.warnings.append("planId converted to string")

        plan_id = sanitize_plan_id(raw_plan_id)
        plan = get_plan(plan_id)
        if plan is None:
            available = available_plan_ids()
            result.errors.append(
                FieldError(
                    "planId",
                    "PLAN_NOT_FOUND",
                    f"Invalid plan ID: {plan_id}. Available plans: {', '.join(available)}",
                    {"available_plans": available},
                )
            )
        return plan

    def _validate_amount(self, amount: int, plan: SubscriptionPlan, result: RequestValidation) -> None:
        expected = expected_amount_minor(plan)
        difference = abs(amount - expected)
        if difference > AMOUNT_TOLERANCE_MINOR:
            result.errors.append(
                FieldError(
                    "amount",
                    "AMOUNT_MISMATCH",
                    f"Payment amount mismatch. Expected: {expected} ({plan.amount} {plan.currency}), received: {amount}",
                    {"expected_amount": expected, "received_amount": amount, "difference": difference},
                )
            )

    def _audit(self, caller: Any, result: RequestValidation, ip: str | None, user_agent: str | None) -> None:
        uid = _caller_value(caller, "uid")
        if self.store is None or not uid:
            return
        if result.is_valid:
            self.store.log_event_safe(
                str(uid),
                "subscription_validation_success",
                {
                    "plan_id": result.plan.id if result.plan else None,
                    "amount": result.amount,
                    "ip": ip,
                    "user_agent": user_agent,
                },
            )
        else:
            self.store.log_event_safe(
                str(uid),
                "subscription_validation_failed",
                {
                    "errors": [error.as_dict() for error in result.errors],
                    "ip": ip,
                    "user_agent": user_agent,
                },
            )
