"""
Paystack REST client.

Only the calls the subscription engine needs: transaction verification (the source of
truth for cross-validation), checkout initialization, authorization charges for payment
retries, subscription lookups for expiring trials and subscription disabling on
cancellation.
"""
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests

from subscription_engine.config import Settings
from subscription_engine.exceptions import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)

USER_AGENT = "subscription-engine/1.0"

# Status codes that mean our side is misconfigured or the gateway is unhealthy, as opposed to
# a well-formed "this transaction does not check out" answer.
_SYSTEM_ERROR_STATUS = {401, 403, 429}


class PaystackClient:
    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.settings.paystack_secret_key)

    def _request(
        self,
        method: str,
        path: str,
        json_payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.configured:
            raise GatewayError("Paystack secret key is not configured.")

        url = f"{self.settings.paystack_base_url}/{path.lstrip('/')}"
        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                headers={
                    "Authorization": f"Bearer {self.settings.paystack_secret_key}",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                json=json_payload,
                timeout=self.settings.paystack_timeout_seconds,
            )
        except requests.Timeout as exc:
            raise GatewayTimeoutError(f"Paystack request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Failed to contact Paystack: {exc}") from exc

        if response.status_code >= 500 or response.status_code in _SYSTEM_ERROR_STATUS:
            raise GatewayError(
                f"Paystack returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Invalid response received from Paystack.", status_code=response.status_code) from exc

        if not isinstance(payload, dict):
            raise GatewayError("Unexpected response format from Paystack.", status_code=response.status_code)
        return payload

    def verify_transaction(self, reference: str) -> dict[str, Any]:
        return self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")

    def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        plan_code: str | None,
        callback_url: str,
        metadata: dict[str, Any] | None = None,
        reference: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "currency": self.settings.currency,
            "callback_url": callback_url,
            "reference": reference or new_reference(),
            "metadata": metadata or {},
        }
        if plan_code:
            payload["plan"] = plan_code
        return self._request("POST", "/transaction/initialize", payload)

    def charge_authorization(
        self,
        authorization_code: str,
        email: str,
        amount_minor: int,
        reference: str | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/transaction/charge_authorization",
            {
                "authorization_code": authorization_code,
                "email": email,
                "amount": amount_minor,
                "currency": self.settings.currency,
                "reference": reference or new_reference("retry"),
            },
        )

    def fetch_subscription(self, subscription_code: str) -> dict[str, Any]:
        return self._request("GET", f"/subscription/{quote(subscription_code, safe='')}")

    def disable_subscription(self, subscription_code: str, email_token: str) -> dict[str, Any]:
        return self._request(
            "POST",
            "/subscription/disable",
            {"code": subscription_code, "token": email_token},
        )


def new_reference(prefix: str = "sub") -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


@dataclass
class RetryChargeResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    # Set when the outcome is unknown (timeout, gateway down); nothing should be recorded.
    transient: bool = False


class PaystackRetryGateway:
    """Re-charges the stored card authorization for a subscription in a failure episode."""

    def __init__(self, client: PaystackClient) -> None:
        self.client = client

    def retry_charge(self, subscription: dict[str, Any], account: dict[str, Any] | None, attempt: int) -> RetryChargeResult:
        authorization_code = subscription.get("authorization_code")
        email = (account or {}).get("email")
        amount = subscription.get("amount")
        if not authorization_code or not email or not amount:
            return RetryChargeResult(success=False, error="missing_authorization_details")

        reference = f"retry_{subscription['user_id']}_{attempt}_{secrets.token_hex(4)}"
        try:
            response = self.client.charge_authorization(authorization_code, email, int(amount), reference)
        except GatewayError as exc:
            logger.warning("Payment retry %s for user %s could not reach Paystack: %s", attempt, subscription["user_id"], exc)
            return RetryChargeResult(success=False, error=str(exc), transient=True)

        data = response.get("data") or {}
        if response.get("status") and str(data.get("status") or "").lower() == "success":
            return RetryChargeResult(success=True, data=data)
        return RetryChargeResult(
            success=False,
            data=data,
            error=str(data.get("gateway_response") or response.get("message") or "charge_failed"),
        )
