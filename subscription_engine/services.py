"""
Wiring of the subscription components for one settings/database pair.
"""
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Callable

from sqlalchemy.orm import sessionmaker

from subscription_engine.atomic import AtomicSubscriptionUpdater
from subscription_engine.config import Settings, get_settings
from subscription_engine.consistency import ConsistencyValidator
from subscription_engine.database import SessionLocal
from subscription_engine.gateway import PaystackClient, PaystackRetryGateway
from subscription_engine.lifecycle import SubscriptionLifecycleService
from subscription_engine.payment_verification import PaymentCrossValidator
from subscription_engine.record_store import RecordStore
from subscription_engine.request_validation import SubscriptionRequestValidator
from subscription_engine.retry_scheduler import PaymentRetryGateway, PaymentRetryScheduler
from subscription_engine.utils.dates import utcnow
from subscription_engine.utils.rate_limiter import RateLimiter, build_rate_limiter
from subscription_engine.webhook_security import WebhookAuthenticityValidator


@dataclass
class SubscriptionServices:
    settings: Settings
    store: RecordStore
    client: PaystackClient
    updater: AtomicSubscriptionUpdater
    webhook_validator: WebhookAuthenticityValidator
    verifier: PaymentCrossValidator
    scheduler: PaymentRetryScheduler
    consistency: ConsistencyValidator
    request_validator: SubscriptionRequestValidator
    lifecycle: SubscriptionLifecycleService
    rate_limiter: RateLimiter


def build_services(
    settings: Settings,
    session_factory: sessionmaker,
    client: PaystackClient | None = None,
    retry_gateway: PaymentRetryGateway | None = None,
    rate_limiter: RateLimiter | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SubscriptionServices:
    store = RecordStore(session_factory, clock=clock)
    client = client or PaystackClient(settings)
    updater = AtomicSubscriptionUpdater(store, settings, clock=clock)
    verifier = PaymentCrossValidator(client, store, settings, clock=clock)
    scheduler = PaymentRetryScheduler(store, updater, retry_gateway or PaystackRetryGateway(client), clock=clock)
    lifecycle = SubscriptionLifecycleService(store, updater, verifier, scheduler, client, settings, clock=clock)
    if rate_limiter is None:
        rate_limiter = build_rate_limiter(settings, session_factory.kw["bind"])
    return SubscriptionServices(
        settings=settings,
        store=store,
        client=client,
        updater=updater,
        webhook_validator=WebhookAuthenticityValidator(settings, store),
        verifier=verifier,
        scheduler=scheduler,
        consistency=ConsistencyValidator(store, updater, clock=clock),
        request_validator=SubscriptionRequestValidator(store),
        lifecycle=lifecycle,
        rate_limiter=rate_limiter,
    )


@lru_cache
def get_services() -> SubscriptionServices:
    return build_services(get_settings(), SessionLocal)
