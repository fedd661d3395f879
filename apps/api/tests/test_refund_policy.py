from datetime import datetime, timedelta, timezone

import pytest

from services.refund_policy import (
    calculate_prorated_refund,
    calculate_subscription_refund,
    check_refund_policy,
    determine_refund_type,
    get_credit_package_by_amount,
)


NOW = datetime(2026, 4, 20, 12, 0, tzinfo=timezone.utc)


def _check(days_ago=1, status="completed", kind="credit_purchase", requested=5000, max_refundable=24900, usage=0):
    return check_refund_policy(
        NOW - timedelta(days=days_ago),
        status,
        kind,
        requested,
        max_refundable,
        usage,
        now=NOW,
    )


def test_prorated_refund_for_half_used_standard_package():
    refund = calculate_prorated_refund(24900, 150, 75)

    assert refund.refundable_amount == 12450
    assert refund.refundable_credits == 75
    assert refund.refund_percentage == 50


def test_prorated_refund_nets_out_earlier_refunds():
    refund = calculate_prorated_refund(24900, 150, 75, already_refunded=10000)
    assert refund.refundable_amount == 2450


def test_fully_used_package_refunds_nothing():
    assert calculate_prorated_refund(9900, 50, 50).refundable_amount == 0
    assert calculate_prorated_refund(9900, 50, 80).refundable_credits == 0


def test_refund_window_eight_days_rejected_seven_allowed():
    late = _check(days_ago=8)
    assert not late.allowed
    assert late.restrictions == ["outside_refund_period"]
    assert "7-day" in late.reason

    assert _check(days_ago=7).allowed


@pytest.mark.parametrize(
    "kwargs, restriction",
    [
        ({"status": "refunded"}, "already_refunded"),
        ({"status": "pending"}, "invalid_status"),
        ({"status": "failed", "days_ago": 30}, "invalid_status"),
        ({"requested": 999}, "below_minimum_amount"),
        ({"requested": 30000}, "exceeds_refundable_amount"),
    ],
)
def test_rejection_reasons(kwargs, restriction):
    result = _check(**kwargs)
    assert not result.allowed
    assert result.restrictions == [restriction]


def test_rejection_order_prefers_status_over_window():
    result = _check(status="refunded", days_ago=30, requested=10)
    assert result.restrictions == ["already_refunded"]


def test_partial_refunded_payment_can_be_refunded_again():
    assert _check(status="partial_refunded").allowed


def test_high_usage_is_advisory_only():
    result = _check(usage=95)
    assert result.allowed
    assert result.restrictions == ["high_usage"]
    assert _check(usage=95, kind="subscription").restrictions == []


def test_subscription_refund_is_time_proportional():
    start = NOW - timedelta(days=10)
    refund = calculate_subscription_refund(29900, start, start + timedelta(days=30), NOW)

    assert refund.total_days == 30
    assert refund.used_days == 10
    assert refund.remaining_days == 20
    assert refund.refundable_amount == 19933
    assert refund.usage_percentage == 33


def test_subscription_refund_after_period_is_zero():
    start = NOW - timedelta(days=40)
    refund = calculate_subscription_refund(29900, start, start + timedelta(days=30), NOW)
    assert refund.refundable_amount == 0
    assert refund.remaining_days == 0


def test_determine_refund_type():
    assert determine_refund_type(24900, 24900) == "full"
    assert determine_refund_type(5000, 24900) == "partial"
    assert determine_refund_type(12450, 24900, used_credits=75, original_credits=150) == "prorated"


def test_credit_package_lookup_by_amount():
    assert get_credit_package_by_amount(24900) == ("standard", 150)
    assert get_credit_package_by_amount(12345) is None
