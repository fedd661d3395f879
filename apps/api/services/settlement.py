"""Entitlement side effects of payment completion and refunds.

Shared by the webhook reconciler, user refunds and the refund retry job. Nothing here
commits; callers own the transaction so payment status, ledger rows and subscription
changes land together or not at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.payment import Payment
from models.subscription import Subscription
from services import credits as ledger
from services.clock import utcnow
from services.gateway.types import GatewayPayment
from services.plans import FREE_PLAN_ID

logger = logging.getLogger(__name__)

COMPENSATED_STATUSES = ("canceled", "refunded", "partial_refunded")


@dataclass(frozen=True)
class RefundSettlement:
    refunded_delta: int
    refunded_total: int
    credits_deducted: int = 0
    subscription_canceled: bool = False


def payment_metadata(payment: Payment) -> Dict[str, Any]:
    return dict(payment.metadata_json or {})


def refunded_total_from_gateway(
    payment: Payment,
    gateway_payment: Optional[GatewayPayment],
    fallback: Optional[int] = None,
) -> int:
    """Cumulative refunded amount reported by the gateway.

    Without balance or cancel details the fallback is used, and a full refund without one.
    """
    if gateway_payment is not None:
        if gateway_payment.balance_amount is not None:
            total = gateway_payment.total_amount or payment.amount
            return max(0, total - gateway_payment.balance_amount)
        if gateway_payment.cancels:
            return sum(record.cancel_amount for record in gateway_payment.cancels)
    return int(fallback if fallback is not None else payment.amount)


async def cancel_payment_subscription(db: AsyncSession, payment: Payment, now: Optional[datetime] = None) -> bool:
    subscription_id = payment.subscription_id or payment_metadata(payment).get("subscription_id")
    if not subscription_id:
        return False
    current = now or utcnow()
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.status != "canceled")
        .values(status="canceled", canceled_at=current, cancel_at_period_end=False)
        .execution_options(synchronize_session=False)
    )
    await ledger.apply_plan_change(db, payment.account_id, FREE_PLAN_ID, None)
    return result.rowcount > 0


async def settle_refund(
    db: AsyncSession,
    payment: Payment,
    refunded_total: int,
    reason: str,
    *,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RefundSettlement:
    """Apply the compensation owed for the refunded amount not yet accounted for.

    ``refunded_total`` is cumulative. Only the part above ``payment.refunded_amount`` is
    compensated, so replaying the same refund is a no-op.
    """
    already = int(payment.refunded_amount or 0)
    total = min(int(payment.amount), max(already, int(refunded_total)))
    delta = total - already

    final_status = status or ("refunded" if total >= payment.amount else "partial_refunded")
    payment.status = final_status
    if delta <= 0:
        await db.flush()
        return RefundSettlement(refunded_delta=0, refunded_total=total)

    credits_deducted = 0
    subscription_canceled = False
    if payment.kind == "credit_purchase":
        granted = int(payment_metadata(payment).get("credits") or 0)
        if granted > 0 and payment.amount > 0:
            owed = (granted * delta) // int(payment.amount)
            credits_deducted = await ledger.deduct_up_to(
                db,
                payment.account_id,
                owed,
                reason,
                entry_type="refund",
                related_payment_id=payment.id,
            )
            if credits_deducted < owed:
                logger.warning(
                    "refund credit clawback capped payment=%s owed=%s deducted=%s",
                    payment.id, owed, credits_deducted,
                )
    elif payment.kind == "subscription":
        subscription_canceled = await cancel_payment_subscription(db, payment, now)

    payment.refunded_amount = total
    await db.flush()
    logger.info(
        "refund_settled payment=%s delta=%s total=%s credits=%s subscription_canceled=%s",
        payment.id, delta, total, credits_deducted, subscription_canceled,
    )
    return RefundSettlement(
        refunded_delta=delta,
        refunded_total=total,
        credits_deducted=credits_deducted,
        subscription_canceled=subscription_canceled,
    )


async def mark_payment_completed(
    db: AsyncSession,
    payment: Payment,
    *,
    gateway_transaction_id: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> bool:
    """Move a payment to completed exactly once; False when another writer already did."""
    values: Dict[str, Any] = {"status": "completed", "paid_at": paid_at or utcnow()}
    if gateway_transaction_id:
        values["gateway_transaction_id"] = gateway_transaction_id
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(("pending", "failed")))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    return result.rowcount > 0


async def grant_purchase_credits(db: AsyncSession, payment: Payment, now: Optional[datetime] = None) -> int:
    metadata = payment_metadata(payment)
    credits = int(metadata.get("credits") or 0)
    if credits <= 0:
        logger.warning("credit purchase without credits metadata payment=%s", payment.id)
        return 0
    validity_days = int(metadata.get("validity_days") or 0)
    expires_at = (now or utcnow()) + timedelta(days=validity_days) if validity_days else None
    await ledger.apply_credit(
        db,
        payment.account_id,
        credits,
        "purchase",
        f"Purchased {credits} credits",
        related_payment_id=payment.id,
        expires_at=expires_at,
    )
    return credits


async def complete_payment(
    db: AsyncSession,
    payment: Payment,
    *,
    gateway_transaction_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Mark completed and grant purchased credits once. Does not commit."""
    if not await mark_payment_completed(db, payment, gateway_transaction_id=gateway_transaction_id, paid_at=now):
        return False
    if payment.kind == "credit_purchase":
        await grant_purchase_credits(db, payment, now)
    return True


async def find_payment(
    db: AsyncSession,
    *,
    gateway_transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
) -> Optional[Payment]:
    if gateway_transaction_id:
        result = await db.execute(select(Payment).where(Payment.gateway_transaction_id == gateway_transaction_id))
        payment = result.scalar_one_or_none()
        if payment is not None:
            return payment
    if order_id:
        result = await db.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalar_one_or_none()
    return None
