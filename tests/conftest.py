import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from subscription_engine import models  # noqa: E402,F401
from subscription_engine.config import DEFAULT_PAYSTACK_IPS, Settings  # noqa: E402
from subscription_engine.database import Base  # noqa: E402
from subscription_engine.gateway import RetryChargeResult  # noqa: E402
from subscription_engine.services import build_services  # noqa: E402
from subscription_engine.utils.rate_limiter import RateLimiter  # noqa: E402

FIXED_NOW = datetime(2025, 3, 1, 12, 0, 0)
USER_ID = "user-0000000001"
USER_EMAIL = "thandi@example.com"
OTHER_USER_ID = "user-0000000002"
ADMIN_ID = "admin-000000001"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakePaystackClient:
    """In-memory stand-in for the Paystack REST API."""

    configured = True

    def __init__(self, clock: FixedClock) -> None:
        self.clock = clock
        self.transactions: dict[str, dict] = {}
        self.errors: dict[str, Exception] = {}
        self.verify_calls: list[str] = []
        self.initialized: list[dict] = []
        self.disabled: list[tuple[str, str]] = []
        self.subscription_statuses: dict[str, str] = {}
        self.fetched: list[str] = []

    def add_transaction(self, reference: str, **overrides) -> dict:
        transaction = {
            "status": "success",
            "reference": reference,
            "amount": 15999,
            "currency": "ZAR",
            "gateway_response": "Successful",
            "created_at": (self.clock() - timedelta(minutes=5)).isoformat() + "Z",
            "customer": {"email": USER_EMAIL, "customer_code": "CUS_test001"},
            "authorization": {"authorization_code": "AUTH_test001", "reusable": True},
            "metadata": {"userId": USER_ID, "planId": "MONTHLY_PLAN"},
        }
        transaction.update(overrides)
        self.transactions[reference] = transaction
        return transaction

    def verify_transaction(self, reference: str) -> dict:
        self.verify_calls.append(reference)
        if reference in self.errors:
            raise self.errors[reference]
        transaction = self.transactions.get(reference)
        if transaction is None:
            return {"status": False, "message": "Transaction reference not found"}
        return {"status": True, "message": "Verification successful", "data": dict(transaction)}

    def initialize_transaction(self, email, amount_minor, plan_code, callback_url, metadata=None, reference=None):
        self.initialized.append(
            {
                "email": email,
                "amount": amount_minor,
                "plan": plan_code,
                "callback_url": callback_url,
                "metadata": metadata,
                "reference": reference,
            }
        )
        return {
            "status": True,
            "message": "Authorization URL created",
            "data": {
                "authorization_url": f"https://checkout.paystack.com/{reference}",
                "access_code": "access_test",
                "reference": reference,
            },
        }

    def fetch_subscription(self, subscription_code):
        self.fetched.append(subscription_code)
        if subscription_code in self.errors:
            raise self.errors[subscription_code]
        status = self.subscription_statuses.get(subscription_code)
        if status is None:
            return {"status": False, "message": "Subscription not found"}
        return {"status": True, "data": {"subscription_code": subscription_code, "status": status}}

    def disable_subscription(self, subscription_code, email_token):
        self.disabled.append((subscription_code, email_token))
        return {"status": True, "message": "Subscription disabled successfully"}


class FakeRetryGateway:
    def __init__(self) -> None:
        self.results: list[RetryChargeResult] = []
        self.calls: list[int] = []

    def retry_charge(self, subscription, account, attempt):
        self.calls.append(attempt)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return RetryChargeResult(success=False, error="Insufficient Funds", data={"gateway_response": "Insufficient Funds"})


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        database_url="sqlite://",
        paystack_secret_key="sk_test_secret",
        paystack_webhook_secret="whsec_test_secret",
        paystack_allowed_ips=DEFAULT_PAYSTACK_IPS + ("testclient",),
        allow_development_ips=False,
        secret_key="test-jwt-secret",
        admin_user_ids=(ADMIN_ID,),
        webhook_rate_limit=100,
        initialize_rate_limit=8,
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


@pytest.fixture
def paystack(clock):
    return FakePaystackClient(clock)


@pytest.fixture
def retry_gateway():
    return FakeRetryGateway()


@pytest.fixture
def services(settings, session_factory, paystack, retry_gateway, clock):
    return build_services(
        settings,
        session_factory,
        client=paystack,
        retry_gateway=retry_gateway,
        rate_limiter=RateLimiter(settings, clock=clock.timestamp),
        clock=clock,
    )


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def updater(services):
    return services.updater


@pytest.fixture
def active_user(services, paystack):
    """USER_ID with a verified monthly subscription."""
    paystack.add_transaction("sub_initialpayment01")
    result = services.lifecycle.verify_callback(USER_ID, USER_EMAIL, "sub_initialpayment01", "MONTHLY_PLAN")
    assert result.status == "applied"
    return USER_ID
