from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(..., min_length=1, max_length=128)
    plan_id: str = Field(..., alias="planId", min_length=1, max_length=64)

    class Config:
        populate_by_name = True


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


class AccountView(BaseModel):
    user_id: str
    email: Optional[str] = None
    plan: str
    subscription_status: str
    subscription_plan: Optional[str] = None
    subscription_reference: Optional[str] = None
    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = None
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    cancellation_date: Optional[datetime] = None
    payment_failure_count: int = 0


class PaymentRetryView(BaseModel):
    retry_attempts: int = 0
    max_retries: int
    next_retry_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    status: str


class SubscriptionView(BaseModel):
    plan_id: Optional[str] = None
    status: str
    reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    payment_retry: Optional[PaymentRetryView] = None


class SubscriptionStatusResponse(BaseModel):
    account: Optional[AccountView] = None
    subscription: Optional[SubscriptionView] = None
    is_premium: bool = False


class InitializeSubscriptionResponse(BaseModel):
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    reference: str
    plan_id: str
    amount: int
    is_trial: bool = False
    warnings: List[str] = []


class VerifyPaymentResponse(BaseModel):
    status: str
    operation: Optional[str] = None
    subscription: SubscriptionStatusResponse


class CancelSubscriptionResponse(BaseModel):
    cancelled: bool
    message: str
    gateway_disabled: Optional[bool] = None
    subscription: SubscriptionStatusResponse


class WebhookAck(BaseModel):
    received: bool = True
    processed: bool
    timestamp: datetime
    reason: Optional[str] = None


class InconsistencyView(BaseModel):
    field: str
    account_value: Any = None
    subscription_value: Any = None


class ConsistencyResponse(BaseModel):
    user_id: str
    is_consistent: bool
    inconsistencies: List[InconsistencyView]
