"""Gateway webhook reconciliation.

Each delivery is logged once per dedup key, then applied inside a single transaction
whose last statement marks the log row processed. The mark is conditional on
``processed_at IS NULL``; a concurrent delivery that loses that race rolls back its
effects. Failures roll back, record the error on the log row and leave it unprocessed
for a later delivery or an operator reprocess.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.subscription import Subscription
from models.webhook_event import WebhookEvent
from services import settlement
from services.clock import utcnow
from services.crypto import payload_digest, sanitize_for_logging
from services.errors import AmountMismatchError, NotFoundError
from services.gateway.types import GatewayPayment

logger = logging.getLogger(__name__)

STATUS_MAP: Dict[str, str] = {
    "DONE": "completed",
    "CANCELED": "canceled",
    "PARTIAL_CANCELED": "partial_refunded",
    "WAITING_FOR_DEPOSIT": "pending",
    "ABORTED": "failed",
    "EXPIRED": "failed",
}

EVENT_ALIASES: Dict[str, str] = {
    "BILLING_STATUS_CHANGED": "BILLING_TOKEN_STATUS_CHANGED",
    "DEPOSIT_CALLBACK": "VIRTUAL_ACCOUNT_DEPOSITED",
}

INACTIVE_BILLING_TOKEN_STATUSES = ("EXPIRED", "STOPPED")

DEDUP_HEADERS = ("x-toss-idempotency-key", "x-request-id")


class WebhookEnvelope(BaseModel):
    eventType: str = Field(min_length=1)
    createdAt: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class PaymentStatusChanged:
    payment_key: Optional[str]
    order_id: Optional[str]
    status: Optional[str]
    total_amount: Optional[int]
    gateway_payment: GatewayPayment


@dataclass(frozen=True)
class BillingTokenStatusChanged:
    customer_key: Optional[str]
    status: Optional[str]


@dataclass(frozen=True)
class VirtualAccountDeposited:
    order_id: Optional[str]
    payment_key: Optional[str]
    status: Optional[str]
    total_amount: Optional[int]
    requires_done: bool = False


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)


GatewayEvent = Union[PaymentStatusChanged, BillingTokenStatusChanged, VirtualAccountDeposited, UnknownEvent]


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    status: str
    detail: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.status == "already_processed"


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_event(envelope: WebhookEnvelope) -> GatewayEvent:
    event_type = EVENT_ALIASES.get(envelope.eventType, envelope.eventType)
    data = envelope.data
    if event_type == "PAYMENT_STATUS_CHANGED":
        return PaymentStatusChanged(
            payment_key=data.get("paymentKey"),
            order_id=data.get("orderId"),
            status=data.get("status"),
            total_amount=_optional_int(data.get("totalAmount")),
            gateway_payment=GatewayPayment.from_payload(data),
        )
    if event_type == "BILLING_TOKEN_STATUS_CHANGED":
        return BillingTokenStatusChanged(customer_key=data.get("customerKey"), status=data.get("status"))
    if event_type == "VIRTUAL_ACCOUNT_DEPOSITED":
        return VirtualAccountDeposited(
            order_id=data.get("orderId"),
            payment_key=data.get("paymentKey"),
            status=data.get("status"),
            total_amount=_optional_int(data.get("totalAmount")),
            requires_done=envelope.eventType == "DEPOSIT_CALLBACK",
        )
    return UnknownEvent(event_type=envelope.eventType, data=dict(data))


def dedup_key_for(raw_body: bytes, headers: Any) -> str:
    """Provider idempotency header when present, otherwise SHA-256 of the raw body."""
    for name in DEDUP_HEADERS:
        value = headers.get(name) if headers is not None else None
        if value:
            return str(value).strip()
    return payload_digest(raw_body)


async def record_event(
    db: AsyncSession,
    dedup_key: str,
    event_type: str,
    payload: Dict[str, Any],
) -> Tuple[WebhookEvent, bool]:
    """Insert the log row, or return the existing one for a repeated dedup key."""
    event = WebhookEvent(dedup_key=dedup_key, event_type=event_type, raw_payload=payload)
    db.add(event)
    try:
        await db.commit()
        await db.refresh(event)
        return event, True
    except IntegrityError:
        await db.rollback()
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.dedup_key == dedup_key))
    existing = result.scalar_one_or_none()
    if existing is None:
        raise NotFoundError(f"Webhook event {dedup_key} vanished after a duplicate insert")
    return existing, False


def _check_amount(payment, total_amount: Optional[int]) -> None:
    if total_amount is not None and int(payment.amount) != total_amount:
        logger.error(
            "webhook amount mismatch order=%s expected=%s received=%s",
            payment.order_id, payment.amount, total_amount,
        )
        raise AmountMismatchError(
            f"Amount mismatch for order {payment.order_id}: expected {payment.amount}, got {total_amount}"
        )


async def _log_subscription_payment_for_review(db: AsyncSession, payment) -> None:
    """A subscription charge settled by callback was never applied to a subscription period.

    The synchronous charge path completes its own payments, so reaching here usually
    means that path lost track of the charge. Entitlement is not granted automatically.
    """
    metadata = settlement.payment_metadata(payment)
    subscription_id = payment.subscription_id or metadata.get("subscription_id")
    subscription = await db.get(Subscription, subscription_id) if subscription_id else None
    if subscription is None:
        problem = "no subscription linked"
    elif subscription.status != "active":
        problem = f"subscription is {subscription.status}"
    else:
        problem = "charge not applied to the subscription period"
    logger.warning(
        "subscription payment completed by callback needs operator review: %s order=%s account=%s plan=%s",
        problem, payment.order_id, payment.account_id, metadata.get("plan_id"),
    )


async def _apply_payment_status(db: AsyncSession, event: PaymentStatusChanged, now: datetime) -> str:
    if not event.payment_key and not event.order_id:
        logger.warning("PAYMENT_STATUS_CHANGED without paymentKey or orderId")
        return "ignored"
    payment = await settlement.find_payment(
        db, gateway_transaction_id=event.payment_key, order_id=event.order_id
    )
    if payment is None:
        logger.warning("webhook payment not found order=%s", event.order_id)
        return "payment_not_found"

    _check_amount(payment, event.total_amount)

    new_status = STATUS_MAP.get((event.status or "").upper())
    if new_status is None:
        logger.info("webhook unmapped payment status=%s order=%s", event.status, payment.order_id)
        return "status_unchanged"

    if new_status == "completed":
        if payment.status == "completed":
            return "already_completed"
        if payment.status not in ("pending", "failed"):
            logger.warning("webhook DONE for payment in status=%s order=%s", payment.status, payment.order_id)
            return "status_unchanged"
        completed = await settlement.complete_payment(db, payment, gateway_transaction_id=event.payment_key, now=now)
        if completed and payment.kind == "subscription":
            await _log_subscription_payment_for_review(db, payment)
        return "completed"

    if new_status in settlement.COMPENSATED_STATUSES:
        if payment.status in ("pending", "failed"):
            # Nothing was granted for a payment that never completed.
            payment.status = new_status
            await db.flush()
            return new_status
        refunded_total = settlement.refunded_total_from_gateway(payment, event.gateway_payment)
        await settlement.settle_refund(
            db,
            payment,
            refunded_total,
            "Payment canceled by gateway",
            status=new_status,
            now=now,
        )
        return new_status

    if payment.status in ("pending", "failed"):
        payment.status = new_status
        await db.flush()
        return new_status
    logger.warning(
        "webhook ignored regression to %s for payment status=%s order=%s",
        new_status, payment.status, payment.order_id,
    )
    return "status_unchanged"


async def _apply_billing_token_status(db: AsyncSession, event: BillingTokenStatusChanged) -> str:
    if not event.customer_key or not event.status:
        logger.warning("billing token event without customerKey or status")
        return "ignored"
    if event.status.upper() not in INACTIVE_BILLING_TOKEN_STATUSES:
        return "ignored"
    result = await db.execute(select(Account.id).where(Account.customer_key == event.customer_key))
    account_id = result.scalar_one_or_none()
    if account_id is None:
        logger.warning("billing token event for unknown customer")
        return "account_not_found"
    await db.execute(
        update(Subscription)
        .where(Subscription.account_id == account_id, Subscription.status == "active")
        .values(status="past_due")
        .execution_options(synchronize_session=False)
    )
    logger.info("subscription past_due after billing token %s account=%s", event.status, account_id)
    return "past_due"


async def _apply_deposit(db: AsyncSession, event: VirtualAccountDeposited, now: datetime) -> str:
    if not event.order_id:
        logger.warning("deposit event without orderId")
        return "ignored"
    if event.requires_done and (event.status or "").upper() != "DONE":
        return "ignored"
    payment = await settlement.find_payment(db, order_id=event.order_id)
    if payment is None:
        logger.warning("deposit payment not found order=%s", event.order_id)
        return "payment_not_found"
    _check_amount(payment, event.total_amount)
    if payment.status == "completed":
        return "already_completed"
    if not await settlement.complete_payment(db, payment, gateway_transaction_id=event.payment_key, now=now):
        return "already_completed"
    return "completed"


async def apply_event(db: AsyncSession, event: GatewayEvent, now: Optional[datetime] = None) -> str:
    current = now or utcnow()
    if isinstance(event, PaymentStatusChanged):
        return await _apply_payment_status(db, event, current)
    if isinstance(event, BillingTokenStatusChanged):
        return await _apply_billing_token_status(db, event)
    if isinstance(event, VirtualAccountDeposited):
        return await _apply_deposit(db, event, current)
    logger.info("unhandled webhook event type=%s", event.event_type)
    return "ignored"


async def _record_failure(db: AsyncSession, event_id: str, error: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id, WebhookEvent.processed_at.is_(None))
        .values(error=error[:2000], attempts=WebhookEvent.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def process_event(db: AsyncSession, event_row: WebhookEvent, now: Optional[datetime] = None) -> WebhookOutcome:
    """Apply a logged event. Never raises for processing failures."""
    event_id = event_row.id
    if event_row.processed_at is not None:
        return WebhookOutcome(event_id, "already_processed")
    raw_payload = dict(event_row.raw_payload or {})

    try:
        envelope = WebhookEnvelope.model_validate(raw_payload)
        result = await apply_event(db, parse_event(envelope), now)
        marked = await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id, WebhookEvent.processed_at.is_(None))
            .values(processed_at=now or utcnow(), error=None, attempts=WebhookEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount == 0:
            await db.rollback()
            logger.info("webhook event=%s applied concurrently; discarding", event_id)
            return WebhookOutcome(event_id, "already_processed")
        await db.commit()
    except Exception as exc:
        await db.rollback()
        logger.exception(
            "webhook processing failed event=%s payload=%s",
            event_id, sanitize_for_logging(raw_payload),
        )
        await _record_failure(db, event_id, f"{type(exc).__name__}: {exc}")
        return WebhookOutcome(event_id, "failed", str(exc))

    logger.info("webhook processed event=%s result=%s", event_id, result)
    return WebhookOutcome(event_id, "processed", result)


async def receive_event(
    db: AsyncSession,
    dedup_key: str,
    envelope: WebhookEnvelope,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    event_row, created = await record_event(db, dedup_key, envelope.eventType, payload)
    if not created and event_row.processed_at is not None:
        logger.info("duplicate webhook dedup_key=%s event=%s", dedup_key, event_row.id)
        return WebhookOutcome(event_row.id, "already_processed")
    return await process_event(db, event_row, now)


async def reprocess_event(db: AsyncSession, event_id: str, now: Optional[datetime] = None) -> WebhookOutcome:
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))
    event_row = result.scalar_one_or_none()
    if event_row is None:
        raise NotFoundError(f"Webhook event {event_id} not found")
    return await process_event(db, event_row, now)
