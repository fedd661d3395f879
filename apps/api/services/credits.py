"""Entitlement ledger: daily quota, credit balance and the append-only credit ledger.

Every balance change is a conditional UPDATE on the account row plus an INSERT into
credit_transactions inside the caller's transaction. ``apply_*`` helpers only flush so
they can be composed with other writes (webhook reconciliation, refund settlement);
``debit``/``credit`` and the generation helpers commit on their own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
import uuid

from sqlalchemy import func, or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_ledger import CREDIT_TRANSACTION_TYPES, CreditLedger
from services.clock import ensure_utc, start_of_day, utcnow
from services.errors import BillingError, InsufficientBalanceError, InvalidAmountError, NotFoundError
from services.plans import get_daily_limit

logger = logging.getLogger(__name__)

T = TypeVar("T")

GRANT_ENTRY_TYPES = ("purchase", "subscription_grant")


@dataclass(frozen=True)
class Availability:
    can_proceed: bool
    use_credits: bool
    message: Optional[str] = None

    @property
    def can_generate(self) -> bool:
        return self.can_proceed


@dataclass(frozen=True)
class LedgerResult:
    new_balance: int
    entry_id: str


@dataclass(frozen=True)
class GenerationGrant:
    use_credits: bool
    daily_remaining: int
    credit_balance: int


def check_availability(daily_remaining: int, credit_balance: int) -> Availability:
    """Daily quota is spent first; credits are consulted only once it is exhausted."""
    if daily_remaining > 0:
        return Availability(can_proceed=True, use_credits=False)
    if credit_balance > 0:
        return Availability(can_proceed=True, use_credits=True)
    return Availability(
        can_proceed=False,
        use_credits=False,
        message="Daily generations are used up. Buy credits or upgrade your plan to continue.",
    )


check_generation_availability = check_availability


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
    return amount


async def _with_store_retry(db: AsyncSession, action: Callable[[], Awaitable[T]], *, label: str) -> T:
    """Run a committing unit of work, retrying transient store failures with doubling delay."""
    attempts = max(int(settings.STORE_RETRY_ATTEMPTS), 1)
    for attempt in range(1, attempts + 1):
        try:
            return await action()
        except OperationalError as exc:
            await db.rollback()
            if attempt >= attempts:
                logger.exception("%s failed after %s attempts", label, attempt)
                raise
            delay = float(settings.STORE_RETRY_BASE_DELAY_SECONDS) * (2 ** (attempt - 1))
            logger.warning("%s transient store error (attempt %s/%s): %s", label, attempt, attempts, exc)
            await asyncio.sleep(delay)
        except BaseException:
            await db.rollback()
            raise
    raise RuntimeError("unreachable")


async def get_account(db: AsyncSession, account_id: str) -> Account:
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    return account


async def read_balance(db: AsyncSession, account_id: str) -> int:
    result = await db.execute(select(Account.credit_balance).where(Account.id == account_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError(f"Account {account_id} not found")
    return int(balance)


async def _apply_balance_change(
    db: AsyncSession,
    account_id: str,
    delta: int,
    *,
    entry_type: str,
    reason: Optional[str],
    related_payment_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> CreditLedger:
    if entry_type not in CREDIT_TRANSACTION_TYPES:
        raise ValueError(f"Unknown credit transaction type: {entry_type}")

    stmt = (
        update(Account)
        .where(Account.id == account_id)
        .values(credit_balance=Account.credit_balance + delta)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(Account.credit_balance >= -delta)
    result = await db.execute(stmt)
    if result.rowcount == 0:
        balance = await read_balance(db, account_id)
        raise InsufficientBalanceError(
            f"Insufficient credits. Required: {-delta}, available: {balance}."
        )

    balance_after = await read_balance(db, account_id)
    # The account row update above holds the row lock, so writers for one account
    # allocate sequence numbers one at a time.
    last_sequence = await db.execute(
        select(func.coalesce(func.max(CreditLedger.sequence), 0)).where(CreditLedger.account_id == account_id)
    )
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        account_id=account_id,
        sequence=int(last_sequence.scalar() or 0) + 1,
        entry_type=entry_type,
        amount=int(delta),
        balance_after=balance_after,
        reason=reason,
        related_payment_id=related_payment_id,
        expires_at=expires_at,
        created_at=utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def apply_debit(
    db: AsyncSession,
    account_id: str,
    amount: int,
    reason: str,
    *,
    entry_type: str = "usage",
    related_payment_id: Optional[str] = None,
) -> CreditLedger:
    """Debit inside the current transaction without committing."""
    debit_amount = _validate_amount(amount)
    return await _apply_balance_change(
        db,
        account_id,
        -debit_amount,
        entry_type=entry_type,
        reason=reason,
        related_payment_id=related_payment_id,
    )


async def apply_credit(
    db: AsyncSession,
    account_id: str,
    amount: int,
    entry_type: str,
    reason: str,
    *,
    related_payment_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> CreditLedger:
    """Credit inside the current transaction without committing."""
    credit_amount = _validate_amount(amount)
    return await _apply_balance_change(
        db,
        account_id,
        credit_amount,
        entry_type=entry_type,
        reason=reason,
        related_payment_id=related_payment_id,
        expires_at=expires_at,
    )


async def debit(db: AsyncSession, account_id: str, amount: int, reason: str) -> LedgerResult:
    _validate_amount(amount)

    async def _run() -> LedgerResult:
        entry = await apply_debit(db, account_id, amount, reason)
        await db.commit()
        return LedgerResult(new_balance=entry.balance_after, entry_id=entry.id)

    return await _with_store_retry(db, _run, label=f"ledger debit account={account_id}")


async def credit(
    db: AsyncSession,
    account_id: str,
    amount: int,
    entry_type: str,
    reason: str,
    related_payment_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> LedgerResult:
    _validate_amount(amount)

    async def _run() -> LedgerResult:
        entry = await apply_credit(
            db,
            account_id,
            amount,
            entry_type,
            reason,
            related_payment_id=related_payment_id,
            expires_at=expires_at,
        )
        await db.commit()
        return LedgerResult(new_balance=entry.balance_after, entry_id=entry.id)

    return await _with_store_retry(db, _run, label=f"ledger credit account={account_id}")


async def deduct_up_to(
    db: AsyncSession,
    account_id: str,
    requested: int,
    reason: str,
    *,
    entry_type: str,
    related_payment_id: Optional[str] = None,
) -> int:
    """Debit min(requested, balance) without committing; returns the amount removed."""
    if requested <= 0:
        return 0
    balance = await read_balance(db, account_id)
    removable = min(int(requested), balance)
    if removable <= 0:
        return 0
    await apply_debit(
        db,
        account_id,
        removable,
        reason,
        entry_type=entry_type,
        related_payment_id=related_payment_id,
    )
    return removable


async def ensure_daily_reset(
    db: AsyncSession,
    account: Account,
    now: Optional[datetime] = None,
) -> bool:
    """Reset the daily quota when quota_reset_at predates today. Does not commit."""
    today = start_of_day(now)
    reset_at = ensure_utc(account.quota_reset_at)
    if reset_at is not None and reset_at >= today:
        return False

    result = await db.execute(
        update(Account)
        .where(
            Account.id == account.id,
            or_(Account.quota_reset_at.is_(None), Account.quota_reset_at < today),
        )
        .values(daily_quota_remaining=get_daily_limit(account.plan), quota_reset_at=today)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(account)
    return result.rowcount > 0


async def apply_plan_change(
    db: AsyncSession,
    account_id: str,
    plan_id: str,
    plan_expires_at: Optional[datetime] = None,
    *,
    refill_quota: bool = False,
) -> None:
    """Switch the account plan inside the current transaction.

    The daily quota is capped at the new plan's limit, or refilled to it on upgrade.
    """
    limit = get_daily_limit(plan_id)
    account = await get_account(db, account_id)
    account.plan = plan_id
    account.plan_expires_at = plan_expires_at
    if refill_quota:
        account.daily_quota_remaining = limit
    else:
        account.daily_quota_remaining = min(int(account.daily_quota_remaining or 0), limit)
    await db.flush()


async def get_entitlement_summary(db: AsyncSession, account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    async def _run() -> Dict[str, Any]:
        account = await get_account(db, account_id)
        was_reset = await ensure_daily_reset(db, account, now)
        await db.commit()
        availability = check_availability(account.daily_quota_remaining, account.credit_balance)
        return {
            "account_id": account.id,
            "plan": account.plan,
            "daily_limit": get_daily_limit(account.plan),
            "daily_quota_remaining": account.daily_quota_remaining,
            "quota_reset_at": ensure_utc(account.quota_reset_at).isoformat() if account.quota_reset_at else None,
            "credit_balance": account.credit_balance,
            "was_reset": was_reset,
            "can_generate": availability.can_proceed,
            "use_credits": availability.use_credits,
        }

    return await _with_store_retry(db, _run, label=f"entitlement read account={account_id}")


async def consume_generation(
    db: AsyncSession,
    account_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> GenerationGrant:
    """Spend one unit of daily quota, or one credit once the quota is exhausted."""

    async def _run() -> GenerationGrant:
        account = await get_account(db, account_id)
        await ensure_daily_reset(db, account, now)
        availability = check_availability(account.daily_quota_remaining, account.credit_balance)
        if not availability.can_proceed:
            raise InsufficientBalanceError(availability.message or "No generations available.")

        use_credits = availability.use_credits
        if not use_credits:
            result = await db.execute(
                update(Account)
                .where(Account.id == account_id, Account.daily_quota_remaining > 0)
                .values(daily_quota_remaining=Account.daily_quota_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            # A concurrent request took the last daily unit; fall through to credits.
            use_credits = result.rowcount == 0

        if use_credits:
            await apply_debit(db, account_id, 1, reason)

        await db.commit()
        await db.refresh(account)
        return GenerationGrant(
            use_credits=use_credits,
            daily_remaining=account.daily_quota_remaining,
            credit_balance=account.credit_balance,
        )

    grant = await _with_store_retry(db, _run, label=f"consume generation account={account_id}")
    logger.info("generation_consumed account=%s use_credits=%s", account_id, grant.use_credits)
    return grant


async def restore_generation(
    db: AsyncSession,
    account_id: str,
    used_credits: bool,
    reason: str = "Generation failed; restoring entitlement",
) -> int:
    """Give back what consume_generation took when the downstream generation failed."""

    async def _run() -> int:
        account = await get_account(db, account_id)
        if used_credits:
            entry = await apply_credit(db, account_id, 1, "refund", reason)
            await db.commit()
            return entry.balance_after

        daily_limit = get_daily_limit(account.plan)
        await db.execute(
            update(Account)
            .where(Account.id == account_id, Account.daily_quota_remaining < daily_limit)
            .values(daily_quota_remaining=Account.daily_quota_remaining + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(account)
        return account.daily_quota_remaining

    try:
        return await _with_store_retry(db, _run, label=f"restore generation account={account_id}")
    except OperationalError:
        logger.error(
            "restore_generation exhausted retries; manual restore required account=%s used_credits=%s",
            account_id,
            used_credits,
        )
        raise


async def replay_balance(db: AsyncSession, account_id: str) -> int:
    """Reconstruct the balance from ledger entries alone."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(CreditLedger.account_id == account_id)
    )
    return int(result.scalar() or 0)


async def verify_ledger(db: AsyncSession, account_id: str) -> bool:
    """Walk the ledger in sequence order.

    False on the first entry whose balance_after differs from the running sum, on a
    gap in the sequence, or when the final sum does not match the account balance.
    """
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.account_id == account_id)
        .order_by(CreditLedger.sequence.asc())
    )
    running = 0
    for expected_sequence, entry in enumerate(result.scalars().all(), start=1):
        running += int(entry.amount)
        if int(entry.sequence) != expected_sequence or int(entry.balance_after) != running:
            logger.warning(
                "ledger mismatch account=%s sequence=%s balance_after=%s running=%s",
                account_id, entry.sequence, entry.balance_after, running,
            )
            return False
    return running == await read_balance(db, account_id)


async def get_credit_history(
    db: AsyncSession,
    account_id: str,
    *,
    limit: int = 30,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.account_id == account_id)
        .order_by(CreditLedger.sequence.desc())
        .limit(max(1, min(int(limit), 100)))
        .offset(max(0, int(offset)))
    )
    return [
        {
            "id": entry.id,
            "sequence": entry.sequence,
            "type": entry.entry_type,
            "amount": entry.amount,
            "balance_after": entry.balance_after,
            "reason": entry.reason,
            "related_payment_id": entry.related_payment_id,
            "expires_at": ensure_utc(entry.expires_at).isoformat() if entry.expires_at else None,
            "created_at": ensure_utc(entry.created_at).isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]


async def expire_credits(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    """Remove credits from grants whose validity ended.

    Spent credits are assumed to come out of the oldest expiring grants first, so only
    the balance not backed by still-valid grants is expired.
    """
    current = ensure_utc(now) or utcnow()
    result = await db.execute(
        select(CreditLedger).where(
            CreditLedger.entry_type.in_(GRANT_ENTRY_TYPES),
            CreditLedger.amount > 0,
            CreditLedger.expires_at.is_not(None),
            CreditLedger.expires_at <= current,
            CreditLedger.expired_at.is_(None),
        )
    )
    by_account: Dict[str, List[CreditLedger]] = {}
    for entry in result.scalars().all():
        by_account.setdefault(entry.account_id, []).append(entry)

    accounts_processed = 0
    credits_expired = 0
    for account_id, entries in by_account.items():
        try:
            valid = await db.execute(
                select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(
                    CreditLedger.account_id == account_id,
                    CreditLedger.entry_type.in_(GRANT_ENTRY_TYPES),
                    CreditLedger.amount > 0,
                    or_(CreditLedger.expires_at.is_(None), CreditLedger.expires_at > current),
                )
            )
            preserved = int(valid.scalar() or 0)
            balance = await read_balance(db, account_id)
            expiring_total = sum(int(entry.amount) for entry in entries)
            to_expire = min(expiring_total, max(0, balance - preserved))
            for entry in entries:
                entry.expired_at = current
            if to_expire > 0:
                await apply_debit(
                    db,
                    account_id,
                    to_expire,
                    f"{to_expire} credits expired",
                    entry_type="expiry",
                )
            await db.commit()
        except BillingError:
            await db.rollback()
            logger.exception("credit expiry failed account=%s", account_id)
            continue
        accounts_processed += 1
        credits_expired += to_expire

    logger.info("credit_expiry accounts=%s credits=%s", accounts_processed, credits_expired)
    return {"processed_count": accounts_processed, "credits_expired": credits_expired}
