import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict


@dataclass(frozen=True)
class SubscriptionPlan:
    id: str
    name: str
    amount: Decimal  # major units
    currency: str
    interval: str
    plan_code: str
    description: str = ""

    @property
    def amount_minor(self) -> int:
        return expected_amount_minor(self)


PLAN_INTERVAL_DAYS = {"monthly": 30, "annually": 365}

TRIAL_VERIFICATION_AMOUNT = Decimal("1.00")


def _plan_code(env_name: str, default: str) -> str:
    return os.getenv(env_name, default).strip() or default


SUBSCRIPTION_PLANS: Dict[str, SubscriptionPlan] = {
    "MONTHLY_PLAN": SubscriptionPlan(
        id="MONTHLY_PLAN",
        name="Premium Monthly",
        amount=Decimal("159.99"),
        currency="ZAR",
        interval="monthly",
        plan_code=_plan_code("PAYSTACK_MONTHLY_PLAN_CODE", "PLN_monthly"),
        description="Premium features billed every month",
    ),
    "ANNUAL_PLAN": SubscriptionPlan(
        id="ANNUAL_PLAN",
        name="Premium Annual",
        amount=Decimal("1800.00"),
        currency="ZAR",
        interval="annually",
        plan_code=_plan_code("PAYSTACK_ANNUAL_PLAN_CODE", "PLN_annual"),
        description="Premium features billed once a year",
    ),
}


def expected_amount_minor(plan: SubscriptionPlan) -> int:
    return int((plan.amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_plan(plan_id: str | None) -> SubscriptionPlan | None:
    return SUBSCRIPTION_PLANS.get((plan_id or "").strip().upper())


def get_plan_by_code(plan_code: str | None) -> SubscriptionPlan | None:
    code = (plan_code or "").strip()
    for plan in SUBSCRIPTION_PLANS.values():
        if plan.plan_code == code:
            return plan
    return None


def available_plan_ids() -> list[str]:
    return sorted(SUBSCRIPTION_PLANS)


def billing_period_end(plan: SubscriptionPlan | None, start: datetime) -> datetime:
    days = PLAN_INTERVAL_DAYS.get(plan.interval if plan else "monthly", 30)
    return start + timedelta(days=days)
