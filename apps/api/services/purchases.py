"""Credit package purchases: prepare a pending order, then confirm it with the gateway."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.payment import Payment
from services import credits as ledger
from services import settlement
from services.clock import ensure_utc, utcnow
from services.errors import AmountMismatchError, NotFoundError, PolicyError, ValidationError
from services.gateway import GatewayClient, GatewayError, get_gateway_client
from services.order_ids import generate_order_id, get_order_id_type, parse_order_id
from services.plans import get_credit_package

logger = logging.getLogger(__name__)


async def prepare_credit_purchase(
    db: AsyncSession,
    account_id: str,
    package_id: str,
    now: Optional[datetime] = None,
) -> Payment:
    package = get_credit_package(package_id)
    await ledger.get_account(db, account_id)
    payment = Payment(
        account_id=account_id,
        order_id=generate_order_id("CRD", ensure_utc(now) or utcnow()),
        kind="credit_purchase",
        status="pending",
        amount=package.price,
        metadata_json={
            "package_id": package.id,
            "credits": package.credits,
            "validity_days": package.validity_days,
        },
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)
    logger.info("credit purchase prepared account=%s order=%s package=%s", account_id, payment.order_id, package.id)
    return payment


async def _mark_failed(db: AsyncSession, payment_id: str, code: str, message: str) -> None:
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == "pending")
        .values(status="failed", failure_code=code, failure_message=message[:500])
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def confirm_credit_purchase(
    db: AsyncSession,
    account_id: str,
    order_id: str,
    payment_key: str,
    amount: int,
    gateway: Optional[GatewayClient] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Confirm a prepared purchase and grant its credits exactly once.

    A confirm that races the gateway webhook still grants once: whichever path moves
    the payment to completed first grants, the other sees it already completed.
    """
    parse_order_id(order_id)
    if get_order_id_type(order_id) != "CRD":
        raise ValidationError("Not a credit purchase order")
    if not (payment_key or "").strip():
        raise ValidationError("paymentKey is required")
    current = ensure_utc(now) or utcnow()

    result = await db.execute(
        select(Payment).where(Payment.order_id == order_id, Payment.account_id == account_id)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    if payment.status == "completed":
        account = await ledger.get_account(db, account_id)
        return {
            "payment_id": payment.id,
            "credits_added": 0,
            "credit_balance": account.credit_balance,
            "already_completed": True,
        }
    if payment.status != "pending":
        raise PolicyError("This payment has already been processed", code="payment_not_pending")
    if int(amount) != int(payment.amount):
        logger.warning(
            "credit purchase amount mismatch order=%s expected=%s received=%s",
            order_id, payment.amount, amount,
        )
        raise AmountMismatchError("Payment amount does not match the order")

    client = gateway or get_gateway_client()
    payment_id = payment.id
    try:
        confirmed = await client.confirm_payment(payment_key, order_id, int(payment.amount))
    except GatewayError as exc:
        if not exc.retryable:
            await _mark_failed(db, payment_id, exc.code, exc.message)
        logger.warning("credit purchase confirm failed order=%s code=%s", order_id, exc.code)
        raise

    if confirmed.total_amount and confirmed.total_amount != int(payment.amount):
        logger.error(
            "gateway confirmed a different amount order=%s expected=%s received=%s",
            order_id, payment.amount, confirmed.total_amount,
        )
        await _mark_failed(db, payment_id, "AMOUNT_MISMATCH", "Confirmed amount does not match")
        raise AmountMismatchError("Confirmed amount does not match the order")

    granted = await settlement.complete_payment(
        db, payment, gateway_transaction_id=confirmed.payment_key or payment_key, now=current
    )
    await db.commit()
    account = await ledger.get_account(db, account_id)
    await db.refresh(account)
    credits_added = int(settlement.payment_metadata(payment).get("credits") or 0) if granted else 0
    logger.info(
        "credit purchase confirmed account=%s order=%s credits=%s", account_id, order_id, credits_added
    )
    return {
        "payment_id": payment_id,
        "credits_added": credits_added,
        "credit_balance": account.credit_balance,
        "already_completed": not granted,
    }
