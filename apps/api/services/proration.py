"""Plan change proration.

Upgrades and monthly-to-yearly changes apply now and bill the per-day difference for
the rest of the period. Downgrades and yearly-to-monthly changes apply at period end
and are never refunded.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from config import settings
from services.clock import ensure_utc, utcnow
from services.plans import CYCLE_DAYS, get_plan, validate_cycle


CHANGE_TYPES = ("same", "upgrade", "downgrade", "cycle_change")


@dataclass(frozen=True)
class ProrationResult:
    change_type: str
    days_remaining: int
    total_days: int
    current_daily_rate: float
    new_daily_rate: float
    prorated_amount: int
    new_plan_amount: int
    effective_date: datetime
    requires_payment: bool

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["effective_date"] = self.effective_date.isoformat()
        return payload


def get_days_remaining(period_end: datetime, now: Optional[datetime] = None) -> int:
    current = ensure_utc(now) or utcnow()
    seconds = (ensure_utc(period_end) - current).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def get_total_days_in_cycle(cycle: str) -> int:
    return CYCLE_DAYS[validate_cycle(cycle)]


def get_daily_rate(plan_id: str, cycle: str) -> float:
    return get_plan(plan_id).price(cycle) / get_total_days_in_cycle(cycle)


def determine_change_type(current_plan: str, current_cycle: str, new_plan: str, new_cycle: str) -> str:
    current_rank = get_plan(current_plan).rank
    new_rank = get_plan(new_plan).rank
    if new_rank > current_rank:
        return "upgrade"
    if new_rank < current_rank:
        return "downgrade"
    if current_cycle != new_cycle:
        return "cycle_change"
    return "same"


def calculate_proration(
    current_plan: str,
    current_cycle: str,
    new_plan: str,
    new_cycle: str,
    current_period_end: datetime,
    now: Optional[datetime] = None,
) -> ProrationResult:
    current = ensure_utc(now) or utcnow()
    period_end = ensure_utc(current_period_end)
    change_type = determine_change_type(current_plan, current_cycle, new_plan, new_cycle)
    days_remaining = get_days_remaining(period_end, current)
    current_daily = get_daily_rate(current_plan, current_cycle)
    new_daily = get_daily_rate(new_plan, new_cycle)

    prorated_amount = 0
    requires_payment = False
    effective_date = current

    immediate = change_type == "upgrade" or (change_type == "cycle_change" and new_cycle == "yearly")
    if immediate:
        difference = (new_daily - current_daily) * days_remaining
        if difference >= settings.MIN_PRORATION_CHARGE:
            prorated_amount = int(round(difference))
            requires_payment = True
    elif change_type != "same":
        effective_date = period_end

    return ProrationResult(
        change_type=change_type,
        days_remaining=days_remaining,
        total_days=get_total_days_in_cycle(current_cycle),
        current_daily_rate=round(current_daily, 2),
        new_daily_rate=round(new_daily, 2),
        prorated_amount=prorated_amount,
        new_plan_amount=get_plan(new_plan).price(new_cycle),
        effective_date=effective_date,
        requires_payment=requires_payment,
    )


def format_proration_summary(result: ProrationResult) -> str:
    when = result.effective_date.date().isoformat()
    if result.change_type == "same":
        return "This is your current plan."
    if result.change_type == "upgrade":
        if result.requires_payment:
            return (
                f"Applies immediately. The difference for the remaining {result.days_remaining} days, "
                f"{result.prorated_amount:,} KRW, will be charged."
            )
        return "Applies immediately. No additional payment is required."
    if result.change_type == "cycle_change":
        if result.requires_payment:
            return f"The billing cycle changes immediately. {result.prorated_amount:,} KRW will be charged."
        return f"The billing cycle changes on {when}."
    return f"Changes on {when} when the current period ends. No refund is issued."
