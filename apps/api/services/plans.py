"""Plan and credit package catalog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal, Optional

from services.errors import UnknownPlanError, ValidationError


BillingCycle = Literal["monthly", "yearly"]
BILLING_CYCLES = ("monthly", "yearly")
CYCLE_DAYS: Dict[str, int] = {"monthly": 30, "yearly": 365}


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    rank: int
    monthly_price: int
    yearly_price: int
    daily_generations: int
    self_serve: bool = True

    def price(self, cycle: str) -> int:
        validate_cycle(cycle)
        return self.monthly_price if cycle == "monthly" else self.yearly_price


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: int
    validity_days: int

    @property
    def price_per_credit(self) -> int:
        return self.price // self.credits


PLANS: Dict[str, Plan] = {
    "starter": Plan("starter", "Starter", 0, 0, 0, 10),
    "pro": Plan("pro", "Pro", 1, 29900, 299000, 100),
    "team": Plan("team", "Team", 2, 99000, 990000, 500),
    # Contact-sales plan; priced out of band.
    "enterprise": Plan("enterprise", "Enterprise", 3, 0, 0, 10000, self_serve=False),
}

FREE_PLAN_ID = "starter"

CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "basic": CreditPackage("basic", "Basic", 50, 9900, 90),
    "standard": CreditPackage("standard", "Standard", 150, 24900, 90),
    "premium": CreditPackage("premium", "Premium", 350, 49900, 180),
}


def validate_cycle(cycle: str) -> str:
    if cycle not in BILLING_CYCLES:
        raise ValidationError(f"Unknown billing cycle: {cycle}")
    return cycle


def get_plan(plan_id: str) -> Plan:
    plan = PLANS.get(plan_id)
    if plan is None:
        raise UnknownPlanError(f"Unknown plan: {plan_id}")
    return plan


def get_paid_plan(plan_id: str) -> Plan:
    plan = get_plan(plan_id)
    if plan.id == FREE_PLAN_ID or not plan.self_serve:
        raise UnknownPlanError(f"Plan {plan_id} cannot be purchased online")
    return plan


def get_daily_limit(plan_id: Optional[str]) -> int:
    plan = PLANS.get(plan_id or FREE_PLAN_ID) or PLANS[FREE_PLAN_ID]
    return plan.daily_generations


def get_credit_package(package_id: str) -> CreditPackage:
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise ValidationError(f"Unknown credit package: {package_id}", code="unknown_package")
    return package


def get_yearly_discount(plan_id: str) -> int:
    plan = get_plan(plan_id)
    if plan.monthly_price <= 0:
        return 0
    full_year = plan.monthly_price * 12
    return round((full_year - plan.yearly_price) / full_year * 100)
