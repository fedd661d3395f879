"""User refund requests: preview, policy check, gateway cancel and settlement."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger
from models.payment import Payment
from models.refund_request import RefundRequest
from models.subscription import Subscription
from services import settlement
from services.clock import ensure_utc, utcnow
from services.credits import read_balance
from services.errors import BillingError, NotFoundError, PolicyError, RefundNotAllowedError
from services.gateway import GatewayClient, GatewayError, GatewayPayment, get_gateway_client
from services.refund_policy import (
    calculate_prorated_refund,
    calculate_subscription_refund,
    check_refund_policy,
    determine_refund_type,
)

logger = logging.getLogger(__name__)

IN_FLIGHT_REFUND_STATUSES = ("pending", "processing", "failed")


def refund_idempotency_key(request_id: str) -> str:
    """Gateway idempotency key for every cancel sent on behalf of one refund request."""
    return f"refund-{request_id}"


@dataclass
class RefundPreview:
    payment_id: str
    payment_kind: str
    original_amount: int
    already_refunded: int
    max_refundable: int
    refund_type: str
    original_credits: int = 0
    used_credits: int = 0
    usage_percentage: float = 0
    allowed: bool = False
    reason: Optional[str] = None
    restrictions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class RefundOutcome:
    request_id: str
    status: str
    requested_amount: int
    approved_amount: Optional[int] = None
    detail: Optional[str] = None


async def _load_payment(db: AsyncSession, account_id: str, payment_id: str) -> Payment:
    result = await db.execute(
        select(Payment).where(Payment.id == payment_id, Payment.account_id == account_id)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


async def used_credits_for_purchase(db: AsyncSession, payment: Payment) -> int:
    """Credits from this purchase no longer in the balance.

    Remaining balance is attributed to the purchase first, and credits already
    clawed back by earlier refunds do not count as used.
    """
    granted = int(settlement.payment_metadata(payment).get("credits") or 0)
    if granted <= 0:
        return 0
    clawed = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(
            CreditLedger.related_payment_id == payment.id,
            CreditLedger.entry_type == "refund",
        )
    )
    clawed_back = -int(clawed.scalar() or 0)
    balance = await read_balance(db, payment.account_id)
    still_owned = max(0, granted - clawed_back)
    remaining = min(still_owned, balance)
    return max(0, still_owned - remaining)


async def _subscription_refundable(db: AsyncSession, payment: Payment, now: datetime) -> int:
    subscription_id = payment.subscription_id or settlement.payment_metadata(payment).get("subscription_id")
    if not subscription_id:
        return max(0, int(payment.amount) - int(payment.refunded_amount or 0))
    result = await db.execute(select(Subscription).where(Subscription.id == subscription_id))
    subscription = result.scalar_one_or_none()
    if subscription is None:
        return max(0, int(payment.amount) - int(payment.refunded_amount or 0))
    refund = calculate_subscription_refund(
        int(payment.amount),
        subscription.current_period_start,
        subscription.current_period_end,
        now,
    )
    return max(0, refund.refundable_amount - int(payment.refunded_amount or 0))


async def preview_refund(
    db: AsyncSession,
    account_id: str,
    payment_id: str,
    requested_amount: Optional[int] = None,
    now: Optional[datetime] = None,
) -> RefundPreview:
    current = ensure_utc(now) or utcnow()
    payment = await _load_payment(db, account_id, payment_id)
    already = int(payment.refunded_amount or 0)
    original_credits = 0
    used_credits = 0
    usage_percentage = 0.0

    if payment.kind == "credit_purchase":
        original_credits = int(settlement.payment_metadata(payment).get("credits") or 0)
        used_credits = await used_credits_for_purchase(db, payment)
        if original_credits > 0:
            usage_percentage = used_credits / original_credits * 100
            max_refundable = calculate_prorated_refund(
                int(payment.amount), original_credits, used_credits, already
            ).refundable_amount
        else:
            max_refundable = max(0, int(payment.amount) - already)
    elif payment.kind == "subscription":
        max_refundable = await _subscription_refundable(db, payment, current)
    else:
        max_refundable = max(0, int(payment.amount) - already)

    requested = int(requested_amount) if requested_amount is not None else max_refundable
    policy = check_refund_policy(
        payment.paid_at or payment.created_at or current,
        payment.status,
        payment.kind,
        requested,
        max_refundable,
        usage_percentage,
        now=current,
    )
    return RefundPreview(
        payment_id=payment.id,
        payment_kind=payment.kind,
        original_amount=int(payment.amount),
        already_refunded=already,
        max_refundable=max_refundable,
        refund_type=determine_refund_type(requested, int(payment.amount), used_credits, original_credits),
        original_credits=original_credits,
        used_credits=used_credits,
        usage_percentage=round(usage_percentage, 2),
        allowed=policy.allowed,
        reason=policy.reason,
        restrictions=list(policy.restrictions),
    )


async def finalize_refund(
    db: AsyncSession,
    request: RefundRequest,
    payment: Payment,
    gateway_payment: Optional[GatewayPayment],
    now: Optional[datetime] = None,
) -> bool:
    """Settle a refund the gateway already accepted and complete the request.

    On a local failure the request stays ``failed`` with the gateway response stored,
    so the next retry settles without calling the gateway again.
    """
    current = now or utcnow()
    approved = int(request.requested_amount)
    request_id = request.id
    response = dict(gateway_payment.raw) if gateway_payment is not None else dict(request.gateway_response or {})
    try:
        fallback = int(payment.refunded_amount or 0) + approved
        refunded_total = settlement.refunded_total_from_gateway(payment, gateway_payment, fallback=fallback)
        await settlement.settle_refund(db, payment, refunded_total, request.reason or "Refund", now=current)
        request.status = "completed"
        request.approved_amount = approved
        request.gateway_response = response
        request.last_error = None
        request.completed_at = current
        await db.commit()
    except (SQLAlchemyError, BillingError) as exc:
        await db.rollback()
        logger.exception("refund settlement failed after gateway success request=%s", request_id)
        refreshed = await db.get(RefundRequest, request_id)
        if refreshed is not None:
            refreshed.status = "failed"
            refreshed.gateway_response = response or {"gateway_refunded": True}
            refreshed.last_error = f"Gateway refund succeeded; local settlement failed: {exc}"
            await db.commit()
        return False
    logger.info("refund_request=%s status=completed amount=%s", request_id, approved)
    return True


async def request_refund(
    db: AsyncSession,
    account_id: str,
    payment_id: str,
    reason: str,
    requested_amount: Optional[int] = None,
    gateway: Optional[GatewayClient] = None,
    now: Optional[datetime] = None,
) -> RefundOutcome:
    current = ensure_utc(now) or utcnow()
    preview = await preview_refund(db, account_id, payment_id, requested_amount, current)
    if not preview.allowed:
        raise RefundNotAllowedError(preview.reason or "Refund not allowed", preview.restrictions)

    in_flight = await db.execute(
        select(RefundRequest.id).where(
            RefundRequest.payment_id == payment_id,
            RefundRequest.status.in_(IN_FLIGHT_REFUND_STATUSES),
        )
    )
    if in_flight.first() is not None:
        raise PolicyError("A refund for this payment is already in progress", code="refund_in_progress")

    payment = await _load_payment(db, account_id, payment_id)
    client = gateway or get_gateway_client()
    requested = int(requested_amount) if requested_amount is not None else preview.max_refundable
    request = RefundRequest(
        payment_id=payment.id,
        account_id=account_id,
        requested_amount=requested,
        refund_type=preview.refund_type,
        reason=reason or "Customer request",
        status="processing",
        claimed_at=current,
    )
    db.add(request)
    await db.commit()
    await db.refresh(request)
    request_id = request.id

    if not payment.gateway_transaction_id:
        request.status = "rejected"
        request.rejection_reason = "Payment has no gateway transaction to refund"
        await db.commit()
        raise RefundNotAllowedError(request.rejection_reason, ["missing_gateway_transaction"])

    is_full = requested >= int(payment.amount) and not payment.refunded_amount
    try:
        gateway_payment = await client.cancel_payment(
            payment.gateway_transaction_id,
            request.reason,
            None if is_full else requested,
            idempotency_key=refund_idempotency_key(request_id),
        )
    except GatewayError as exc:
        if exc.retryable:
            request.status = "failed"
            request.last_error = f"{exc.code}: {exc.message}"
            await db.commit()
            logger.warning("refund_request=%s status=failed retryable code=%s", request_id, exc.code)
            return RefundOutcome(request_id, "failed", requested, detail=exc.user_message)
        request.status = "rejected"
        request.rejection_reason = f"Refund failed (not recoverable): {exc.message}"
        request.last_error = f"{exc.code}: {exc.message}"
        await db.commit()
        logger.info("refund_request=%s status=rejected code=%s", request_id, exc.code)
        raise
    except Exception as exc:
        # Outcome at the gateway is unknown; leave the request for the retry job,
        # whose cancel reuses the same idempotency key.
        await db.rollback()
        logger.exception("refund_request=%s cancel call crashed", request_id)
        stranded = await db.get(RefundRequest, request_id, populate_existing=True)
        if stranded is not None and stranded.status == "processing":
            stranded.status = "failed"
            stranded.last_error = f"{type(exc).__name__}: {exc}"
            await db.commit()
        raise

    if await finalize_refund(db, request, payment, gateway_payment, current):
        return RefundOutcome(request_id, "completed", requested, approved_amount=requested)
    return RefundOutcome(
        request_id,
        "failed",
        requested,
        detail="The refund was issued; your balance will be updated shortly.",
    )


async def list_manual_review(db: AsyncSession, limit: int = 100) -> List[Dict[str, Any]]:
    """Failed requests that exhausted their retry budget."""
    result = await db.execute(
        select(RefundRequest)
        .where(
            RefundRequest.status == "failed",
            RefundRequest.retry_count >= settings.REFUND_RETRY_MAX_ATTEMPTS,
        )
        .order_by(RefundRequest.created_at.asc())
        .limit(limit)
    )
    return [
        {
            "id": row.id,
            "payment_id": row.payment_id,
            "account_id": row.account_id,
            "requested_amount": row.requested_amount,
            "refund_type": row.refund_type,
            "retry_count": row.retry_count,
            "last_error": row.last_error,
            "gateway_refunded": bool(row.gateway_response),
        }
        for row in result.scalars().all()
    ]
