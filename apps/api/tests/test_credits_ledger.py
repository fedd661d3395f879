from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.account import Account
from models.credit_ledger import CreditLedger
from services import credits as ledger
from services.clock import start_of_day
from services.errors import InsufficientBalanceError, InvalidAmountError, NotFoundError


NOW = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)


async def _entries(db, account_id):
    result = await db.execute(
        select(CreditLedger).where(CreditLedger.account_id == account_id).order_by(CreditLedger.sequence.asc())
    )
    return result.scalars().all()


@pytest.mark.parametrize(
    "daily, balance, can_proceed, use_credits",
    [
        (5, 0, True, False),
        (5, 10, True, False),
        (0, 10, True, True),
        (0, 0, False, False),
    ],
)
def test_availability_table(daily, balance, can_proceed, use_credits):
    availability = ledger.check_availability(daily, balance)
    assert availability.can_proceed is can_proceed
    assert availability.use_credits is use_credits
    assert (availability.message is None) is can_proceed


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_amount", [0, -5, 1.5, "10", True])
async def test_invalid_amount_is_rejected_before_any_mutation(db, account, bad_amount):
    with pytest.raises(InvalidAmountError):
        await ledger.credit(db, account.id, bad_amount, "purchase", "bad")
    with pytest.raises(InvalidAmountError):
        await ledger.debit(db, account.id, bad_amount, "bad")

    assert await _entries(db, account.id) == []
    refreshed = await ledger.get_account(db, account.id)
    assert refreshed.credit_balance == 0


@pytest.mark.asyncio
async def test_credit_then_debit_keeps_running_balance(db, account):
    first = await ledger.credit(db, account.id, 150, "purchase", "Standard package")
    second = await ledger.debit(db, account.id, 40, "generation")
    third = await ledger.credit(db, account.id, 5, "admin_adjustment", "goodwill")

    assert (first.new_balance, second.new_balance, third.new_balance) == (150, 110, 115)
    entries = await _entries(db, account.id)
    assert [(entry.amount, entry.balance_after) for entry in entries] == [(150, 150), (-40, 110), (5, 115)]
    assert await ledger.replay_balance(db, account.id) == 115
    assert await ledger.verify_ledger(db, account.id)


@pytest.mark.asyncio
async def test_ledger_entries_are_numbered_per_account(db, account):
    other = Account(id="acct-test-0002", email="other@example.com", plan="starter", daily_quota_remaining=10)
    db.add(other)
    await db.commit()

    await ledger.credit(db, account.id, 10, "purchase", "a")
    await ledger.credit(db, other.id, 7, "purchase", "b")
    await ledger.debit(db, account.id, 4, "c")

    assert [entry.sequence for entry in await _entries(db, account.id)] == [1, 2]
    assert [entry.sequence for entry in await _entries(db, other.id)] == [1]


@pytest.mark.asyncio
async def test_verify_ledger_catches_a_corrupted_middle_entry(db, account):
    await ledger.credit(db, account.id, 100, "purchase", "first")
    await ledger.credit(db, account.id, 50, "purchase", "second")
    await ledger.debit(db, account.id, 30, "third")
    assert await ledger.verify_ledger(db, account.id)

    # Totals still add up to the account balance; only one running balance is wrong.
    first = (await _entries(db, account.id))[0]
    first.balance_after = 999
    await db.commit()

    assert await ledger.replay_balance(db, account.id) == 120
    assert not await ledger.verify_ledger(db, account.id)


@pytest.mark.asyncio
async def test_verify_ledger_catches_a_missing_entry(db, account):
    await ledger.credit(db, account.id, 100, "purchase", "first")
    await ledger.credit(db, account.id, 50, "purchase", "second")

    entries = await _entries(db, account.id)
    await db.delete(entries[0])
    await db.commit()

    assert not await ledger.verify_ledger(db, account.id)


@pytest.mark.asyncio
async def test_debit_never_drives_balance_negative(db, account):
    await ledger.credit(db, account.id, 3, "purchase", "small")

    with pytest.raises(InsufficientBalanceError):
        await ledger.debit(db, account.id, 4, "too much")

    refreshed = await ledger.get_account(db, account.id)
    await db.refresh(refreshed)
    assert refreshed.credit_balance == 3
    assert len(await _entries(db, account.id)) == 1
    assert await ledger.replay_balance(db, account.id) == 3


@pytest.mark.asyncio
async def test_unknown_account_is_not_found(db):
    with pytest.raises(NotFoundError):
        await ledger.credit(db, "missing-account", 5, "purchase", "x")


@pytest.mark.asyncio
async def test_deduct_up_to_caps_at_balance(db, account):
    await ledger.credit(db, account.id, 7, "purchase", "grant")

    removed = await ledger.deduct_up_to(db, account.id, 20, "refund clawback", entry_type="refund")
    await db.commit()

    assert removed == 7
    assert await ledger.replay_balance(db, account.id) == 0


@pytest.mark.asyncio
async def test_daily_reset_happens_once_per_reference_day(db, account):
    summary = await ledger.get_entitlement_summary(db, account.id, NOW)
    assert summary["was_reset"] is True
    assert summary["daily_quota_remaining"] == 10

    again = await ledger.get_entitlement_summary(db, account.id, NOW + timedelta(hours=1))
    assert again["was_reset"] is False

    refreshed = await ledger.get_account(db, account.id)
    assert refreshed.quota_reset_at is not None
    assert start_of_day(NOW).isoformat() == summary["quota_reset_at"]


def test_start_of_day_uses_reference_timezone():
    # 16:00 UTC is already the next calendar day in Seoul.
    late_utc = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)
    assert start_of_day(late_utc) == datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
    assert start_of_day(NOW) == datetime(2026, 3, 9, 15, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_consume_uses_daily_quota_before_credits(db, account):
    await ledger.credit(db, account.id, 2, "purchase", "pack")
    grants = [await ledger.consume_generation(db, account.id, "generate", NOW) for _ in range(11)]

    assert [grant.use_credits for grant in grants] == [False] * 10 + [True]
    assert grants[-1].daily_remaining == 0
    assert grants[-1].credit_balance == 1


@pytest.mark.asyncio
async def test_consume_without_entitlement_raises(db, account):
    for _ in range(10):
        await ledger.consume_generation(db, account.id, "generate", NOW)

    with pytest.raises(InsufficientBalanceError):
        await ledger.consume_generation(db, account.id, "generate", NOW)


@pytest.mark.asyncio
async def test_restore_generation_gives_back_what_was_taken(db, account):
    await ledger.credit(db, account.id, 1, "purchase", "pack")
    for _ in range(10):
        await ledger.consume_generation(db, account.id, "generate", NOW)
    grant = await ledger.consume_generation(db, account.id, "generate", NOW)
    assert grant.use_credits

    balance = await ledger.restore_generation(db, account.id, used_credits=True)
    daily = await ledger.restore_generation(db, account.id, used_credits=False)

    assert balance == 1
    assert daily == 1
    assert await ledger.verify_ledger(db, account.id)


@pytest.mark.asyncio
async def test_restore_daily_never_exceeds_plan_limit(db, account):
    await ledger.get_entitlement_summary(db, account.id, NOW)

    remaining = await ledger.restore_generation(db, account.id, used_credits=False)

    assert remaining == 10


@pytest.mark.asyncio
async def test_plan_change_caps_or_refills_quota(db, account):
    await ledger.get_entitlement_summary(db, account.id, NOW)
    await ledger.apply_plan_change(db, account.id, "pro", NOW + timedelta(days=30), refill_quota=True)
    await db.commit()
    upgraded = await ledger.get_account(db, account.id)
    assert (upgraded.plan, upgraded.daily_quota_remaining) == ("pro", 100)

    await ledger.apply_plan_change(db, account.id, "starter", None)
    await db.commit()
    downgraded = await ledger.get_account(db, account.id)
    assert (downgraded.plan, downgraded.daily_quota_remaining) == ("starter", 10)
    assert downgraded.plan_expires_at is None


@pytest.mark.asyncio
async def test_expire_credits_only_removes_unspent_expired_grants(db, account):
    await ledger.credit(db, account.id, 50, "purchase", "old", expires_at=NOW - timedelta(days=1))
    await ledger.credit(db, account.id, 30, "purchase", "fresh", expires_at=NOW + timedelta(days=60))
    await ledger.debit(db, account.id, 20, "usage")

    result = await ledger.expire_credits(db, NOW)

    assert result == {"processed_count": 1, "credits_expired": 30}
    assert await ledger.replay_balance(db, account.id) == 30
    entries = {entry.reason: entry for entry in await _entries(db, account.id)}
    assert entries["30 credits expired"].entry_type == "expiry"
    assert entries["30 credits expired"].amount == -30
    assert entries["old"].expired_at is not None
    assert entries["fresh"].expired_at is None

    second = await ledger.expire_credits(db, NOW)
    assert second == {"processed_count": 0, "credits_expired": 0}


@pytest.mark.asyncio
async def test_credit_history_is_newest_first(db, account):
    await ledger.credit(db, account.id, 10, "purchase", "first")
    await ledger.debit(db, account.id, 4, "second")

    history = await ledger.get_credit_history(db, account.id, limit=10)

    assert len(history) == 2
    assert {item["type"] for item in history} == {"purchase", "usage"}
    assert all("balance_after" in item for item in history)


@pytest.mark.asyncio
async def test_entitlement_endpoint(client, account, auth_headers):
    response = await client.get("/billing/entitlement", headers=auth_headers)

    assert response.status_code == 200
    payload = response.json()
    assert payload["plan"] == "starter"
    assert payload["daily_limit"] == 10
    assert payload["can_generate"] is True


@pytest.mark.asyncio
async def test_consume_endpoint_returns_402_when_exhausted(client, db, account, auth_headers):
    account.daily_quota_remaining = 0
    account.quota_reset_at = datetime.now(timezone.utc) + timedelta(days=1)
    await db.commit()

    response = await client.post("/billing/generations/consume", json={}, headers=auth_headers)

    assert response.status_code == 402
    assert response.json()["code"] == "insufficient_balance"


@pytest.mark.asyncio
async def test_billing_endpoints_require_session(client, account):
    response = await client.get("/billing/entitlement")
    assert response.status_code == 401
