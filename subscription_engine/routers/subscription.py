import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from subscription_engine import schemas
from subscription_engine.auth import AuthenticatedCaller, get_admin_caller, get_current_caller
from subscription_engine.exceptions import AtomicUpdateError, ConcurrentUpdateError, GatewayError, RecordNotFoundError
from subscription_engine.lifecycle import (
    STATUS_ALREADY_APPLIED,
    STATUS_APPLIED,
    STATUS_DUPLICATE,
    STATUS_UNVERIFIED,
)
from subscription_engine.services import SubscriptionServices, get_services
from subscription_engine.states import Plan
from subscription_engine.utils.dates import utcnow

router = APIRouter(prefix="/api/subscription", tags=["subscription"])
logger = logging.getLogger(__name__)

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"


def _enforce_rate_limit_or_429(
    services: SubscriptionServices,
    request: Request,
    scope: str,
    limit: int,
    window_seconds: int,
    extra_key: str | None = None,
) -> None:
    allowed, retry_after = services.rate_limiter.check_ip_rate_limit(
        request=request,
        scope=scope,
        limit=limit,
        window_seconds=window_seconds,
        extra_key=extra_key,
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )


def _build_status_response(services: SubscriptionServices, user_id: str) -> schemas.SubscriptionStatusResponse:
    account = services.store.get_account(user_id)
    subscription = services.store.get_subscription(user_id)
    return schemas.SubscriptionStatusResponse(
        account=schemas.AccountView(**account) if account else None,
        subscription=schemas.SubscriptionView(**subscription) if subscription else None,
        is_premium=bool(account and account.get("plan") == Plan.PREMIUM.value),
    )


@router.post("/webhook/paystack", response_model=schemas.WebhookAck)
async def paystack_webhook(
    request: Request,
    services: SubscriptionServices = Depends(get_services),
):
    settings = services.settings
    _enforce_rate_limit_or_429(
        services,
        request=request,
        scope="subscription.paystack_webhook",
        limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
    )

    body = await request.body()
    validation = services.webhook_validator.validate(
        raw_body=body,
        signature=request.headers.get(PAYSTACK_SIGNATURE_HEADER),
        source_ip=services.rate_limiter.extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not validation.valid:
        # Acknowledge so the sender stops redelivering a request we will never accept.
        return schemas.WebhookAck(processed=False, timestamp=utcnow(), reason=validation.reason)

    try:
        outcome = services.lifecycle.handle_webhook_event(validation.payload)
    except Exception:
        logger.exception("Unexpected error processing webhook event %s", validation.event)
        return schemas.WebhookAck(processed=False, timestamp=utcnow(), reason="processing_error")

    if outcome.status == STATUS_UNVERIFIED and not outcome.queued:
        # Nothing stored it for reprocessing; make Paystack deliver it again.
        raise HTTPException(status_code=503, detail="Webhook could not be verified. Please retry.")

    return schemas.WebhookAck(
        processed=outcome.processed,
        timestamp=utcnow(),
        reason=None if outcome.processed else (outcome.reason or outcome.status),
    )


@router.post("/initialize", response_model=schemas.InitializeSubscriptionResponse)
def initialize_subscription(
    request: Request,
    payload: Any = Body(...),
    trial: bool = False,
    caller: AuthenticatedCaller = Depends(get_current_caller),
    services: SubscriptionServices = Depends(get_services),
):
    settings = services.settings
    _enforce_rate_limit_or_429(
        services,
        request=request,
        scope="subscription.initialize",
        limit=settings.initialize_rate_limit,
        window_seconds=settings.initialize_rate_window_seconds,
        extra_key=caller.uid,
    )

    validation = services.request_validator.validate(
        caller,
        payload,
        ip=services.rate_limiter.extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not validation.is_valid:
        raise HTTPException(
            status_code=400,
            detail={"errors": [error.as_dict() for error in validation.errors]},
        )

    try:
        result = services.lifecycle.initialize_subscription(validation, trial=trial)
    except GatewayError as exc:
        logger.warning("Subscription initialization failed for user %s: %s", caller.uid, exc)
        raise HTTPException(status_code=502, detail="Payment provider is unavailable. Please try again.")

    return schemas.InitializeSubscriptionResponse(
        authorization_url=result.authorization_url,
        access_code=result.access_code,
        reference=result.reference,
        plan_id=result.plan_id,
        amount=result.amount,
        is_trial=result.is_trial,
        warnings=validation.warnings,
    )


@router.post("/verify", response_model=schemas.VerifyPaymentResponse)
def verify_payment(
    payload: schemas.VerifyPaymentRequest,
    caller: AuthenticatedCaller = Depends(get_current_caller),
    services: SubscriptionServices = Depends(get_services),
):
    try:
        result = services.lifecycle.verify_callback(caller.uid, caller.email, payload.reference.strip(), payload.plan_id)
    except ConcurrentUpdateError:
        raise HTTPException(status_code=409, detail="Subscription changed while verifying. Please retry.")
    except AtomicUpdateError as exc:
        logger.error("Verified payment could not be applied for user %s: %s", caller.uid, exc)
        raise HTTPException(status_code=500, detail="Could not update subscription.")

    if result.status == STATUS_DUPLICATE:
        raise HTTPException(status_code=409, detail="Transaction reference already processed.")
    if result.status == STATUS_UNVERIFIED:
        raise HTTPException(status_code=502, detail="Payment could not be verified yet. Please retry.")
    if result.status not in {STATUS_APPLIED, STATUS_ALREADY_APPLIED}:
        raise HTTPException(status_code=400, detail={"errors": result.errors or ["Payment verification failed"]})

    return schemas.VerifyPaymentResponse(
        status=result.status,
        operation=result.operation,
        subscription=_build_status_response(services, caller.uid),
    )


@router.post("/cancel", response_model=schemas.CancelSubscriptionResponse)
def cancel_subscription(
    payload: schemas.CancelSubscriptionRequest | None = Body(default=None),
    caller: AuthenticatedCaller = Depends(get_current_caller),
    services: SubscriptionServices = Depends(get_services),
):
    reason = (payload.reason if payload else None) or "user_requested"
    try:
        result = services.lifecycle.cancel(caller.uid, reason=reason.strip())
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Subscription not found")
    except AtomicUpdateError as exc:
        logger.error("Cancellation failed for user %s: %s", caller.uid, exc)
        raise HTTPException(status_code=500, detail="Could not cancel subscription.")

    if not result.cancelled:
        raise HTTPException(status_code=400, detail=result.message)

    return schemas.CancelSubscriptionResponse(
        cancelled=result.cancelled,
        message=result.message,
        gateway_disabled=result.gateway_disabled,
        subscription=_build_status_response(services, caller.uid),
    )


@router.get("/me", response_model=schemas.SubscriptionStatusResponse)
def get_my_subscription(
    caller: AuthenticatedCaller = Depends(get_current_caller),
    services: SubscriptionServices = Depends(get_services),
):
    return _build_status_response(services, caller.uid)


@router.get("/consistency/{user_id}", response_model=schemas.ConsistencyResponse)
def check_consistency(
    user_id: str,
    admin: AuthenticatedCaller = Depends(get_admin_caller),
    services: SubscriptionServices = Depends(get_services),
):
    try:
        report = services.consistency.check_consistency(user_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")

    return schemas.ConsistencyResponse(
        user_id=user_id,
        is_consistent=report.is_consistent,
        inconsistencies=[schemas.InconsistencyView(**item.as_dict()) for item in report.inconsistencies],
    )
