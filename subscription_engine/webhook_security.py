"""
Authenticity checks for inbound Paystack webhooks.

A webhook is only trusted when it carries a valid HMAC-SHA512 signature over the exact bytes
received, comes from the gateway's egress addresses, has the shape of a known event and holds
no script-injection content. Failures are logged as security events and appended to the audit
log; the endpoint still acknowledges the delivery.
"""
import hashlib
import hmac
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from subscription_engine.config import Settings
from subscription_engine.record_store import RecordStore

logger = logging.getLogger(__name__)

CHARGE_EVENTS = {"charge.success", "charge.failed"}
SUBSCRIPTION_EVENTS = {"subscription.disable", "subscription.not_renewing", "subscription.deactivate"}
VALID_EVENTS = CHARGE_EVENTS | SUBSCRIPTION_EVENTS | {
    "subscription.create",
    "invoice.create",
    "invoice.payment_failed",
}

DEVELOPMENT_IPS = {"127.0.0.1", "::1", "localhost"}

_SUSPICIOUS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
)
_SANITIZE_PATTERNS = (
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    *_SUSPICIOUS_PATTERNS[1:],
)

REASON_MISSING_SIGNATURE = "missing_signature"
REASON_MISSING_SECRET = "missing_secret"
REASON_INVALID_SIGNATURE = "invalid_signature"
REASON_UNAUTHORIZED_IP = "unauthorized_ip"
REASON_INVALID_PAYLOAD = "invalid_payload"
REASON_MALICIOUS_CONTENT = "malicious_content"


@dataclass
class WebhookValidationResult:
    valid: bool
    reason: str | None = None
    errors: list[str] = field(default_factory=list)
    payload: dict[str, Any] | None = None

    @property
    def event(self) -> str | None:
        return (self.payload or {}).get("event")


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield str(key)
            yield from _iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item)


def scan_for_injection(value: Any) -> bool:
    """True when any string inside ``value`` matches a script-injection pattern."""
    return any(pattern.search(text) for text in _iter_strings(value) for pattern in _SUSPICIOUS_PATTERNS)


def sanitize_webhook_data(data: Any) -> dict[str, Any]:
    """Copy of ``data`` with injection patterns stripped from strings; nulls are dropped."""
    if not isinstance(data, dict):
        return {}
    return {key: value for key, value in ((key, _sanitize_value(item)) for key, item in data.items()) if value is not None}


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        for pattern in _SANITIZE_PATTERNS:
            value = pattern.sub("", value)
        return value.strip()
    if isinstance(value, dict):
        return sanitize_webhook_data(value)
    if isinstance(value, list):
        return [item for item in (_sanitize_value(item) for item in value) if item is not None]
    if isinstance(value, (bool, int, float)):
        return value
    return None


def validate_payload_shape(payload: Any) -> list[str]:
    if not isinstance(payload, dict):
        return ["Payload must be a valid JSON object"]

    errors = []
    event = payload.get("event")
    data = payload.get("data")
    if not isinstance(event, str) or not event:
        errors.append("Missing or invalid event field")
    elif event not in VALID_EVENTS:
        errors.append(f"Unknown event type: {event}")
    if not isinstance(data, dict):
        errors.append("Missing or invalid data field")
        return errors

    if event in CHARGE_EVENTS:
        if not data.get("reference"):
            errors.append("Missing reference for charge event")
        customer = data.get("customer")
        if not isinstance(customer, dict) or not customer.get("email"):
            errors.append("Missing customer email for charge event")
    elif event in SUBSCRIPTION_EVENTS:
        if not data.get("subscription") and not data.get("customer"):
            errors.append("Missing subscription or customer data for subscription event")
    return errors


class WebhookAuthenticityValidator:
    def __init__(self, settings: Settings, store: RecordStore | None = None) -> None:
        self.settings = settings
        self.store = store

    def verify_signature(self, raw_body: bytes, signature: str | None) -> str | None:
        """Reason string when the signature check fails, otherwise ``None``."""
        provided = (signature or "").strip().lower()
        if not provided:
            return REASON_MISSING_SIGNATURE
        secret = self.settings.paystack_webhook_secret
        if not secret:
            return REASON_MISSING_SECRET
        expected = compute_signature(raw_body, secret)
        if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
            return REASON_INVALID_SIGNATURE
        return None

    def is_allowed_source(self, source_ip: str | None) -> bool:
        ip = (source_ip or "").strip()
        if ip in self.settings.paystack_allowed_ips:
            return True
        if self.settings.is_production or not self.settings.allow_development_ips:
            return False
        if self.settings.environment != "development":
            return False
        if ip in DEVELOPMENT_IPS:
            logger.info("Development mode: webhook source %s allowed", ip)
            return True
        return False

    def validate(
        self,
        raw_body: bytes,
        signature: str | None,
        source_ip: str | None,
        user_agent: str | None = None,
    ) -> WebhookValidationResult:
        reason = self.verify_signature(raw_body, signature)
        if reason:
            return self._reject(reason, ["Invalid webhook signature"], None, source_ip, user_agent)

        if not self.is_allowed_source(source_ip):
            return self._reject(
                REASON_UNAUTHORIZED_IP,
                ["Request from unauthorized IP address"],
                None,
                source_ip,
                user_agent,
            )

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return self._reject(
                REASON_INVALID_PAYLOAD,
                ["Payload must be a valid JSON object"],
                None,
                source_ip,
                user_agent,
            )

        errors = validate_payload_shape(payload)
        if errors:
            return self._reject(REASON_INVALID_PAYLOAD, errors, payload, source_ip, user_agent)

        if scan_for_injection(payload.get("data")):
            return self._reject(
                REASON_MALICIOUS_CONTENT,
                ["Potentially malicious content detected in payload"],
                payload,
                source_ip,
                user_agent,
            )

        logger.info("Webhook security validation passed ip=%s event=%s", source_ip, payload.get("event"))
        return WebhookValidationResult(valid=True, payload=payload)

    def _reject(
        self,
        reason: str,
        errors: list[str],
        payload: Any,
        source_ip: str | None,
        user_agent: str | None,
    ) -> WebhookValidationResult:
        event = payload.get("event") if isinstance(payload, dict) else None
        logger.warning(
            "Webhook security event reason=%s ip=%s user_agent=%s event=%s errors=%s",
            reason,
            source_ip or "unknown",
            user_agent or "unknown",
            event,
            errors,
        )
        if self.store is not None:
            self.store.log_event_safe(
                None,
                "webhook_security_failed",
                {
                    "reason": reason,
                    "errors": errors,
                    "ip": source_ip or "unknown",
                    "user_agent": user_agent or "unknown",
                    "event": event,
                },
            )
        return WebhookValidationResult(
            valid=False,
            reason=reason,
            errors=errors,
            payload=payload if isinstance(payload, dict) else None,
        )
