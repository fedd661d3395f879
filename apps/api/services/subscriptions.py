"""Subscription lifecycle: start, plan change, cancel and renewal."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.payment import Payment
from models.subscription import Subscription
from services import credits as ledger
from services import settlement
from services.clock import ensure_utc, utcnow
from services.crypto import decrypt_billing_key, encrypt_billing_key
from services.errors import (
    AmountMismatchError,
    DuplicateActiveSubscriptionError,
    NotFoundError,
    PolicyError,
    ValidationError,
)
from services.gateway import GatewayClient, GatewayError, GatewayPayment, get_gateway_client
from services.order_ids import generate_customer_key, generate_order_id
from services.plans import CYCLE_DAYS, FREE_PLAN_ID, get_paid_plan, validate_cycle
from services.proration import ProrationResult, calculate_proration

logger = logging.getLogger(__name__)

CURRENT_SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "paused")


@dataclass
class RenewalRunResult:
    processed: int = 0
    renewed: int = 0
    canceled: int = 0
    retry_scheduled: int = 0
    past_due: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def period_end_for(start: datetime, cycle: str) -> datetime:
    return start + timedelta(days=CYCLE_DAYS[validate_cycle(cycle)])


def _order_name(plan_name: str, cycle: str, suffix: str = "") -> str:
    label = f"{plan_name} plan ({cycle})"
    return f"{label} {suffix}".strip()


def subscription_to_dict(subscription: Subscription) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "id": subscription.id,
        "plan": subscription.plan,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "current_period_start": _iso(subscription.current_period_start),
        "current_period_end": _iso(subscription.current_period_end),
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
        "canceled_at": _iso(subscription.canceled_at),
        "pending_plan": subscription.pending_plan,
        "pending_billing_cycle": subscription.pending_billing_cycle,
        "renewal_retry_count": int(subscription.renewal_retry_count or 0),
        "next_retry_at": _iso(subscription.next_retry_at),
    }


async def get_active_subscription(db: AsyncSession, account_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.account_id == account_id, Subscription.status == "active")
    )
    return result.scalar_one_or_none()


async def get_current_subscription(db: AsyncSession, account_id: str) -> Optional[Subscription]:
    """Most recent subscription still attached to the account, if any."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.account_id == account_id,
            Subscription.status.in_(CURRENT_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def _require_active(db: AsyncSession, account_id: str) -> Subscription:
    subscription = await get_active_subscription(db, account_id)
    if subscription is None:
        raise NotFoundError("No active subscription")
    return subscription


async def _mark_payment_failed(db: AsyncSession, payment_id: str, code: str, message: str) -> None:
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == "pending")
        .values(status="failed", failure_code=code, failure_message=message[:500])
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _charge(
    db: AsyncSession,
    client: GatewayClient,
    account: Account,
    payment: Payment,
    billing_key: str,
    order_name: str,
) -> GatewayPayment:
    """Charge the stored billing key for a pending payment.

    A declined charge marks the payment failed. On a retryable error the charge may
    still have gone through, so the payment stays pending for the gateway callback
    to settle.
    """
    payment_id = payment.id
    try:
        charged = await client.charge_billing_key(
            billing_key, account.customer_key, int(payment.amount), payment.order_id, order_name
        )
    except GatewayError as exc:
        if exc.retryable:
            logger.warning(
                "billing key charge outcome unknown order=%s code=%s; payment left pending",
                payment.order_id, exc.code,
            )
        else:
            logger.warning("billing key charge failed order=%s code=%s", payment.order_id, exc.code)
            await _mark_payment_failed(db, payment_id, exc.code, exc.message)
        raise
    if charged.total_amount and charged.total_amount != int(payment.amount):
        logger.error(
            "charge amount mismatch order=%s expected=%s received=%s",
            payment.order_id, payment.amount, charged.total_amount,
        )
        await _mark_payment_failed(db, payment_id, "AMOUNT_MISMATCH", "Charged amount does not match")
        raise AmountMismatchError("Charged amount does not match the order amount")
    return charged


async def _create_pending_payment(
    db: AsyncSession,
    account_id: str,
    prefix: str,
    amount: int,
    metadata: Dict[str, Any],
    now: datetime,
    subscription_id: Optional[str] = None,
) -> Payment:
    payment = Payment(
        account_id=account_id,
        order_id=generate_order_id(prefix, now),
        kind="subscription",
        status="pending",
        amount=amount,
        subscription_id=subscription_id,
        metadata_json=metadata,
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)
    return payment


async def start_subscription(
    db: AsyncSession,
    account_id: str,
    plan_id: str,
    billing_cycle: str,
    auth_key: str,
    gateway: Optional[GatewayClient] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Issue a billing key, take the first charge and activate the plan."""
    plan = get_paid_plan(plan_id)
    validate_cycle(billing_cycle)
    current = ensure_utc(now) or utcnow()
    if not (auth_key or "").strip():
        raise ValidationError("An authorization key is required")

    existing = await get_active_subscription(db, account_id)
    if existing is not None:
        if existing.plan == plan.id:
            raise DuplicateActiveSubscriptionError(f"Already subscribed to the {plan.name} plan")
        raise DuplicateActiveSubscriptionError("An active subscription already exists; change plans instead")

    account = await ledger.get_account(db, account_id)
    if not account.customer_key:
        account.customer_key = generate_customer_key()
        await db.commit()

    client = gateway or get_gateway_client()
    issued = await client.issue_billing_key(auth_key, account.customer_key)
    account.billing_key_encrypted = encrypt_billing_key(issued.billing_key)
    await db.commit()

    amount = plan.price(billing_cycle)
    payment = await _create_pending_payment(
        db,
        account_id,
        "SUB",
        amount,
        {"plan_id": plan.id, "billing_cycle": billing_cycle},
        current,
    )
    charged = await _charge(db, client, account, payment, issued.billing_key, _order_name(plan.name, billing_cycle))

    order_id = payment.order_id
    period_end = period_end_for(current, billing_cycle)
    subscription = Subscription(
        account_id=account_id,
        plan=plan.id,
        billing_cycle=billing_cycle,
        status="active",
        current_period_start=current,
        current_period_end=period_end,
    )
    db.add(subscription)
    try:
        await db.flush()
        payment.subscription_id = subscription.id
        payment.metadata_json = {**settlement.payment_metadata(payment), "subscription_id": subscription.id}
        await settlement.mark_payment_completed(
            db, payment, gateway_transaction_id=charged.payment_key or None, paid_at=current
        )
        await ledger.apply_plan_change(db, account_id, plan.id, period_end, refill_quota=True)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        # Charged but a concurrent start won; the payment stays pending for refund review.
        logger.error("concurrent subscription start account=%s order=%s", account_id, order_id)
        raise DuplicateActiveSubscriptionError("An active subscription already exists")

    await db.refresh(subscription)
    logger.info(
        "subscription started account=%s subscription=%s plan=%s cycle=%s",
        account_id, subscription.id, plan.id, billing_cycle,
    )
    return subscription


async def preview_change(
    db: AsyncSession,
    account_id: str,
    new_plan: str,
    new_cycle: str,
    now: Optional[datetime] = None,
) -> ProrationResult:
    subscription = await _require_active(db, account_id)
    get_paid_plan(new_plan)
    return calculate_proration(
        subscription.plan,
        subscription.billing_cycle,
        new_plan,
        new_cycle,
        subscription.current_period_end,
        now,
    )


async def change_plan(
    db: AsyncSession,
    account_id: str,
    new_plan: str,
    new_cycle: str,
    gateway: Optional[GatewayClient] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Upgrades and monthly-to-yearly switches apply now and bill the prorated difference.

    Downgrades and yearly-to-monthly switches are scheduled for the end of the current period.
    """
    current = ensure_utc(now) or utcnow()
    subscription = await _require_active(db, account_id)
    plan = get_paid_plan(new_plan)
    proration = calculate_proration(
        subscription.plan,
        subscription.billing_cycle,
        plan.id,
        new_cycle,
        subscription.current_period_end,
        current,
    )
    if proration.change_type == "same":
        raise ValidationError("Already on this plan and billing cycle")

    scheduled = proration.change_type == "downgrade" or (
        proration.change_type == "cycle_change" and new_cycle != "yearly"
    )
    if scheduled:
        subscription.pending_plan = plan.id
        subscription.pending_billing_cycle = new_cycle
        await db.commit()
        logger.info(
            "plan change scheduled subscription=%s plan=%s effective=%s",
            subscription.id, plan.id, proration.effective_date.isoformat(),
        )
        return {
            "subscription": subscription_to_dict(subscription),
            "proration": proration.to_dict(),
            "payment_id": None,
            "scheduled": True,
        }

    payment_id = None
    if proration.requires_payment:
        account = await ledger.get_account(db, account_id)
        if not account.billing_key_encrypted or not account.customer_key:
            raise PolicyError("No payment method on file", code="missing_payment_method")
        billing_key = decrypt_billing_key(account.billing_key_encrypted)
        payment = await _create_pending_payment(
            db,
            account_id,
            "CHG",
            proration.prorated_amount,
            {
                "plan_id": plan.id,
                "billing_cycle": new_cycle,
                "previous_plan": subscription.plan,
                "previous_billing_cycle": subscription.billing_cycle,
                "change_type": proration.change_type,
                "subscription_id": subscription.id,
            },
            current,
            subscription_id=subscription.id,
        )
        client = gateway or get_gateway_client()
        charged = await _charge(
            db, client, account, payment, billing_key, _order_name(plan.name, new_cycle, "change")
        )
        await settlement.mark_payment_completed(
            db, payment, gateway_transaction_id=charged.payment_key or None, paid_at=current
        )
        payment_id = payment.id

    subscription = await _require_active(db, account_id)
    subscription.plan = plan.id
    subscription.billing_cycle = new_cycle
    subscription.pending_plan = None
    subscription.pending_billing_cycle = None
    await ledger.apply_plan_change(
        db,
        account_id,
        plan.id,
        subscription.current_period_end,
        refill_quota=proration.change_type == "upgrade",
    )
    await db.commit()
    logger.info(
        "plan changed subscription=%s type=%s plan=%s cycle=%s charged=%s",
        subscription.id, proration.change_type, plan.id, new_cycle,
        proration.prorated_amount if payment_id else 0,
    )
    return {
        "subscription": subscription_to_dict(subscription),
        "proration": proration.to_dict(),
        "payment_id": payment_id,
        "scheduled": False,
    }


async def cancel_pending_change(db: AsyncSession, account_id: str) -> Subscription:
    subscription = await _require_active(db, account_id)
    if not subscription.pending_plan:
        raise PolicyError("No scheduled plan change", code="no_pending_change")
    subscription.pending_plan = None
    subscription.pending_billing_cycle = None
    await db.commit()
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    account_id: str,
    immediate: bool = False,
    now: Optional[datetime] = None,
) -> Subscription:
    current = ensure_utc(now) or utcnow()
    subscription = await _require_active(db, account_id)
    subscription.canceled_at = current
    if immediate:
        subscription.status = "canceled"
        subscription.cancel_at_period_end = False
        await ledger.apply_plan_change(db, account_id, FREE_PLAN_ID, None)
    else:
        subscription.cancel_at_period_end = True
    await db.commit()
    logger.info(
        "subscription canceled subscription=%s immediate=%s", subscription.id, immediate
    )
    return subscription


async def resume_subscription(db: AsyncSession, account_id: str) -> Subscription:
    """Undo a pending cancel-at-period-end."""
    subscription = await _require_active(db, account_id)
    if not subscription.cancel_at_period_end:
        raise PolicyError("Subscription is not scheduled for cancellation", code="not_canceling")
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    await db.commit()
    return subscription


async def _end_subscription(db: AsyncSession, subscription: Subscription) -> None:
    subscription.status = "canceled"
    subscription.cancel_at_period_end = False
    await ledger.apply_plan_change(db, subscription.account_id, FREE_PLAN_ID, None)
    await db.commit()
    logger.info("subscription ended at period end subscription=%s", subscription.id)


async def _set_past_due(db: AsyncSession, subscription_id: str, reason: str, attempts: Optional[int] = None) -> None:
    values: Dict[str, Any] = {"status": "past_due", "next_retry_at": None, "last_renewal_error": reason[:500]}
    if attempts is not None:
        values["renewal_retry_count"] = attempts
    await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.status == "active")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning("subscription past_due subscription=%s reason=%s", subscription_id, reason)


def renewal_retry_delay(attempt: int) -> timedelta:
    """Wait before renewal attempt ``attempt + 1``; doubles after each failure."""
    return timedelta(hours=int(settings.RENEWAL_RETRY_BASE_HOURS) * (2 ** max(attempt - 1, 0)))


async def _schedule_renewal_retry(
    db: AsyncSession,
    subscription_id: str,
    previous_attempts: int,
    reason: str,
    now: datetime,
) -> str:
    """Record a retryable renewal failure. Returns retry_scheduled or past_due once attempts run out."""
    attempts = previous_attempts + 1
    if attempts >= int(settings.RENEWAL_MAX_ATTEMPTS):
        await _set_past_due(db, subscription_id, f"renewal retries exhausted: {reason}", attempts)
        return "past_due"
    next_retry_at = now + renewal_retry_delay(attempts)
    await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.status == "active")
        .values(renewal_retry_count=attempts, next_retry_at=next_retry_at, last_renewal_error=reason[:500])
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning(
        "subscription renewal retry scheduled subscription=%s attempt=%s/%s next_retry_at=%s reason=%s",
        subscription_id, attempts, settings.RENEWAL_MAX_ATTEMPTS, next_retry_at.isoformat(), reason,
    )
    return "retry_scheduled"


async def renew_subscription(
    db: AsyncSession,
    subscription: Subscription,
    client: GatewayClient,
    now: datetime,
) -> str:
    """Renew one due subscription. Returns renewed, canceled, retry_scheduled or past_due."""
    if subscription.cancel_at_period_end:
        await _end_subscription(db, subscription)
        return "canceled"

    plan = get_paid_plan(subscription.pending_plan or subscription.plan)
    cycle = subscription.pending_billing_cycle or subscription.billing_cycle
    account = await ledger.get_account(db, subscription.account_id)
    if not account.billing_key_encrypted or not account.customer_key:
        await _set_past_due(db, subscription.id, "missing billing key")
        return "past_due"

    subscription_id = subscription.id
    previous_attempts = int(subscription.renewal_retry_count or 0)
    period_start = ensure_utc(subscription.current_period_end)
    payment = await _create_pending_payment(
        db,
        account.id,
        "SUB",
        plan.price(cycle),
        {
            "plan_id": plan.id,
            "billing_cycle": cycle,
            "subscription_id": subscription_id,
            "is_renewal": True,
        },
        now,
        subscription_id=subscription_id,
    )
    try:
        charged = await _charge(
            db,
            client,
            account,
            payment,
            decrypt_billing_key(account.billing_key_encrypted),
            _order_name(plan.name, cycle, "renewal"),
        )
    except GatewayError as exc:
        error = f"{exc.code}: {exc.message}"
        if exc.retryable:
            return await _schedule_renewal_retry(db, subscription_id, previous_attempts, error, now)
        await _set_past_due(db, subscription_id, error, previous_attempts + 1)
        return "past_due"
    except AmountMismatchError as exc:
        await _set_past_due(db, subscription_id, str(exc), previous_attempts + 1)
        return "past_due"

    period_end = period_end_for(period_start, cycle)
    renewed = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.current_period_end == subscription.current_period_end)
        .values(
            plan=plan.id,
            billing_cycle=cycle,
            current_period_start=period_start,
            current_period_end=period_end,
            pending_plan=None,
            pending_billing_cycle=None,
            renewal_retry_count=0,
            next_retry_at=None,
            last_renewal_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    if renewed.rowcount == 0:
        order_id = payment.order_id
        await db.rollback()
        logger.error("subscription renewed concurrently subscription=%s order=%s", subscription_id, order_id)
        return "renewed"
    await settlement.mark_payment_completed(
        db, payment, gateway_transaction_id=charged.payment_key or None, paid_at=now
    )
    await ledger.apply_plan_change(db, account.id, plan.id, period_end)
    await db.commit()
    logger.info(
        "subscription renewed subscription=%s plan=%s period_end=%s",
        subscription_id, plan.id, period_end.isoformat(),
    )
    return "renewed"


async def renew_due_subscriptions(
    db: AsyncSession,
    gateway: Optional[GatewayClient] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> RenewalRunResult:
    current = ensure_utc(now) or utcnow()
    results = RenewalRunResult()
    due = await db.execute(
        select(Subscription.id)
        .where(
            Subscription.status == "active",
            Subscription.current_period_end <= current,
            or_(Subscription.next_retry_at.is_(None), Subscription.next_retry_at <= current),
        )
        .order_by(Subscription.current_period_end.asc())
        .limit(limit or settings.RENEWAL_BATCH_SIZE)
    )
    subscription_ids = [row[0] for row in due.all()]
    client = None
    for subscription_id in subscription_ids:
        subscription = await db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None or subscription.status != "active":
            continue
        results.processed += 1
        if client is None and not subscription.cancel_at_period_end:
            client = gateway or get_gateway_client()
        try:
            outcome = await renew_subscription(db, subscription, client, current)
        except Exception as exc:
            await db.rollback()
            logger.exception("subscription renewal crashed subscription=%s", subscription_id)
            results.errors.append(f"{subscription_id}: {exc}")
            continue
        if outcome == "renewed":
            results.renewed += 1
        elif outcome == "canceled":
            results.canceled += 1
        elif outcome == "retry_scheduled":
            results.retry_scheduled += 1
            results.errors.append(f"{subscription_id}: renewal charge failed, retry scheduled")
        else:
            results.past_due += 1
            results.errors.append(f"{subscription_id}: renewal charge failed")

    logger.info(
        "subscription renewal finished processed=%s renewed=%s canceled=%s retry_scheduled=%s past_due=%s",
        results.processed, results.renewed, results.canceled, results.retry_scheduled, results.past_due,
    )
    return results
