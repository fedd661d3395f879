"""Re-drive refund requests whose gateway cancel failed with a retryable error."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment import Payment
from models.refund_request import RefundRequest
from services.clock import utcnow
from services.gateway import GatewayClient, GatewayError, GatewayPayment, get_gateway_client
from services.refunds import finalize_refund, refund_idempotency_key

logger = logging.getLogger(__name__)

RETRYABLE_REFUND_STATUSES = ("pending", "failed")


@dataclass
class RetryRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    skipped: int = 0
    reclaimed: int = 0
    max_retries_reached: int = 0
    deadline_reached: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


async def _claim(db: AsyncSession, request_id: str, max_attempts: int, now: datetime) -> bool:
    result = await db.execute(
        update(RefundRequest)
        .where(
            RefundRequest.id == request_id,
            RefundRequest.status.in_(RETRYABLE_REFUND_STATUSES),
            RefundRequest.retry_count < max_attempts,
        )
        .values(status="processing", claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount > 0


async def release_stale_claims(db: AsyncSession, now: datetime) -> int:
    """Move requests stuck in processing past their lease back to failed.

    A worker that died mid-cancel leaves no outcome behind. The released request
    counts one attempt and is retried with the same idempotency key, so a cancel the
    gateway already performed is not performed twice.
    """
    cutoff = now - timedelta(minutes=int(settings.REFUND_PROCESSING_LEASE_MINUTES))
    result = await db.execute(
        update(RefundRequest)
        .where(
            RefundRequest.status == "processing",
            or_(
                RefundRequest.claimed_at < cutoff,
                and_(RefundRequest.claimed_at.is_(None), RefundRequest.created_at < cutoff),
            ),
        )
        .values(
            status="failed",
            retry_count=RefundRequest.retry_count + 1,
            last_error="Processing lease expired; gateway outcome unknown",
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.warning("refund_retry released stale processing requests count=%s", result.rowcount)
    return int(result.rowcount or 0)


async def _reject(db: AsyncSession, request: RefundRequest, reason: str, error: Optional[str] = None) -> None:
    request.status = "rejected"
    request.rejection_reason = reason
    if error:
        request.last_error = error
    await db.commit()
    logger.info("refund_retry request=%s status=rejected reason=%s", request.id, reason)


async def _fail(db: AsyncSession, request: RefundRequest, error: str) -> None:
    request.status = "failed"
    request.retry_count = int(request.retry_count or 0) + 1
    request.last_error = error
    await db.commit()
    logger.info(
        "refund_retry request=%s status=failed retry_count=%s error=%s",
        request.id, request.retry_count, error,
    )


async def _retry_one(
    db: AsyncSession,
    request_id: str,
    gateway: GatewayClient,
    results: RetryRunResult,
    now: datetime,
) -> None:
    request = await db.get(RefundRequest, request_id, populate_existing=True)
    payment = await db.get(Payment, request.payment_id) if request is not None else None
    if request is None:
        results.skipped += 1
        return
    if payment is None:
        await _reject(db, request, "Payment no longer exists")
        results.rejected += 1
        return

    if request.gateway_response:
        # Gateway already refunded on an earlier attempt; only local settlement is owed.
        gateway_payment = GatewayPayment.from_payload(request.gateway_response)
    else:
        if not payment.gateway_transaction_id:
            await _reject(db, request, "No gateway transaction id; cannot retry")
            results.skipped += 1
            return
        is_full = int(request.requested_amount) >= int(payment.amount) and not payment.refunded_amount
        try:
            gateway_payment = await gateway.cancel_payment(
                payment.gateway_transaction_id,
                request.reason,
                None if is_full else int(request.requested_amount),
                idempotency_key=refund_idempotency_key(request_id),
            )
        except GatewayError as exc:
            error = f"{exc.code}: {exc.message}"
            if exc.retryable:
                await _fail(db, request, error)
                results.failed += 1
                results.errors.append(f"{request_id}: {error} (will retry)")
            else:
                await _reject(db, request, f"Refund failed (not recoverable): {exc.message}", error)
                results.rejected += 1
                results.errors.append(f"{request_id}: {error}")
            return

    if await finalize_refund(db, request, payment, gateway_payment, now):
        results.succeeded += 1
        return
    refreshed = await db.get(RefundRequest, request_id, populate_existing=True)
    if refreshed is not None:
        refreshed.retry_count = int(refreshed.retry_count or 0) + 1
        await db.commit()
    results.failed += 1
    results.errors.append(f"{request_id}: local settlement failed")


async def run_refund_retries(
    db: AsyncSession,
    gateway: Optional[GatewayClient] = None,
    *,
    clock: Callable[[], float] = time.monotonic,
    budget_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> RetryRunResult:
    """One scheduler tick. Stops claiming work once the invocation budget is spent."""
    started = clock()
    budget = (
        budget_seconds
        if budget_seconds is not None
        else settings.CRON_TIMEOUT_SECONDS - settings.CRON_SAFETY_MARGIN_SECONDS
    )
    max_attempts = int(settings.REFUND_RETRY_MAX_ATTEMPTS)
    current = now or utcnow()
    results = RetryRunResult()
    results.reclaimed = await release_stale_claims(db, current)

    candidates = await db.execute(
        select(RefundRequest.id)
        .where(
            RefundRequest.status.in_(RETRYABLE_REFUND_STATUSES),
            RefundRequest.retry_count < max_attempts,
        )
        .order_by(RefundRequest.created_at.asc())
    )
    request_ids = [row[0] for row in candidates.all()]
    if request_ids:
        client = gateway or get_gateway_client()
        logger.info("refund_retry starting count=%s", len(request_ids))
    for index, request_id in enumerate(request_ids):
        if clock() - started > budget:
            results.deadline_reached = True
            logger.warning(
                "refund_retry deadline reached processed=%s remaining=%s",
                results.processed, len(request_ids) - index,
            )
            break
        if not await _claim(db, request_id, max_attempts, current):
            results.skipped += 1
            continue
        results.processed += 1
        try:
            await _retry_one(db, request_id, client, results, current)
        except Exception as exc:
            await db.rollback()
            logger.exception("refund_retry request=%s crashed", request_id)
            results.failed += 1
            results.errors.append(f"{request_id}: {exc}")
            request = await db.get(RefundRequest, request_id, populate_existing=True)
            if request is not None and request.status == "processing":
                await _fail(db, request, str(exc))

    maxed = await db.execute(
        select(func.count(RefundRequest.id)).where(
            RefundRequest.status == "failed",
            RefundRequest.retry_count >= max_attempts,
        )
    )
    results.max_retries_reached = int(maxed.scalar() or 0)
    if results.max_retries_reached:
        logger.warning("refund_retry requests awaiting manual review count=%s", results.max_retries_reached)

    logger.info(
        "refund_retry finished processed=%s succeeded=%s failed=%s rejected=%s elapsed=%.2fs",
        results.processed, results.succeeded, results.failed, results.rejected, clock() - started,
    )
    return results
