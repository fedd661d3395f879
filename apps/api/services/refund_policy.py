"""Refund eligibility and refundable amount calculations."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from config import settings
from services.clock import ensure_utc, utcnow
from services.plans import CREDIT_PACKAGES


# Credit purchases used beyond this percentage get an advisory restriction.
HIGH_USAGE_PERCENTAGE = 90


@dataclass(frozen=True)
class RefundPolicyCheck:
    allowed: bool
    reason: Optional[str] = None
    restrictions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProratedRefund:
    original_amount: int
    refundable_amount: int
    original_credits: int
    used_credits: int
    refundable_credits: int
    refund_percentage: int


@dataclass(frozen=True)
class SubscriptionRefund:
    refundable_amount: int
    used_days: int
    remaining_days: int
    total_days: int
    usage_percentage: int


def _days_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 86400


def check_refund_policy(
    payment_date: datetime,
    payment_status: str,
    payment_type: str,
    requested_amount: int,
    max_refundable_amount: int,
    usage_percentage: float = 0,
    now: Optional[datetime] = None,
) -> RefundPolicyCheck:
    if payment_status == "refunded":
        return RefundPolicyCheck(False, "This payment has already been refunded", ["already_refunded"])

    if payment_status not in ("completed", "partial_refunded"):
        return RefundPolicyCheck(False, "This payment is not in a refundable state", ["invalid_status"])

    window = settings.REFUND_ELIGIBLE_DAYS
    days_since = math.floor(_days_between(payment_date, ensure_utc(now) or utcnow()))
    if days_since > window:
        return RefundPolicyCheck(
            False,
            f"The {window}-day refund window has passed",
            ["outside_refund_period"],
        )

    if requested_amount < settings.MIN_REFUND_AMOUNT:
        return RefundPolicyCheck(
            False,
            f"The minimum refund amount is {settings.MIN_REFUND_AMOUNT:,} KRW",
            ["below_minimum_amount"],
        )

    if requested_amount > max_refundable_amount:
        return RefundPolicyCheck(
            False,
            f"The refundable amount ({max_refundable_amount:,} KRW) was exceeded",
            ["exceeds_refundable_amount"],
        )

    restrictions: List[str] = []
    if payment_type == "credit_purchase" and usage_percentage > HIGH_USAGE_PERCENTAGE:
        restrictions.append("high_usage")
    return RefundPolicyCheck(True, None, restrictions)


def calculate_prorated_refund(
    original_amount: int,
    original_credits: int,
    used_credits: int,
    already_refunded: int = 0,
) -> ProratedRefund:
    refundable_credits = max(0, original_credits - used_credits)
    refundable = 0
    if original_credits > 0:
        refundable = (original_amount * refundable_credits) // original_credits
    refundable = max(0, refundable - already_refunded)
    percentage = round(refundable / original_amount * 100) if original_amount > 0 else 0
    return ProratedRefund(
        original_amount=original_amount,
        refundable_amount=refundable,
        original_credits=original_credits,
        used_credits=used_credits,
        refundable_credits=refundable_credits,
        refund_percentage=percentage,
    )


def calculate_subscription_refund(
    amount: int,
    period_start: datetime,
    period_end: datetime,
    refund_date: Optional[datetime] = None,
) -> SubscriptionRefund:
    at = ensure_utc(refund_date) or utcnow()
    total_days = math.ceil(_days_between(period_start, period_end))
    used_days = math.ceil(_days_between(period_start, at))
    remaining_days = max(0, total_days - used_days)
    usage_percentage = round(used_days / total_days * 100) if total_days > 0 else 0
    refundable = (amount * remaining_days) // total_days if remaining_days > 0 else 0
    return SubscriptionRefund(
        refundable_amount=refundable,
        used_days=used_days,
        remaining_days=remaining_days,
        total_days=total_days,
        usage_percentage=usage_percentage,
    )


def determine_refund_type(
    requested_amount: int,
    original_amount: int,
    used_credits: int = 0,
    original_credits: int = 0,
) -> str:
    if original_credits > 0 and used_credits > 0:
        return "prorated"
    if requested_amount >= original_amount:
        return "full"
    return "partial"


def get_credit_package_by_amount(amount: int) -> Optional[Tuple[str, int]]:
    """(package_id, credits) for the package priced at `amount`, if any."""
    for package in CREDIT_PACKAGES.values():
        if package.price == amount:
            return package.id, package.credits
    return None
