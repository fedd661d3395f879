import pytest

from models.payment import Payment
from services import credits as ledger
from services.errors import AmountMismatchError, NotFoundError, PolicyError, ValidationError
from services.gateway import GatewayError, GatewayPayment
from services.purchases import confirm_credit_purchase, prepare_credit_purchase


async def _reload_payment(db, payment_id):
    return await db.get(Payment, payment_id, populate_existing=True)


@pytest.mark.asyncio
async def test_prepare_creates_pending_order_for_package(db, account):
    payment = await prepare_credit_purchase(db, account.id, "standard")

    assert payment.status == "pending"
    assert payment.kind == "credit_purchase"
    assert payment.amount == 24900
    assert payment.order_id.startswith("CRD_")
    assert payment.metadata_json == {"package_id": "standard", "credits": 150, "validity_days": 90}


@pytest.mark.asyncio
async def test_prepare_rejects_unknown_package(db, account):
    with pytest.raises(ValidationError):
        await prepare_credit_purchase(db, account.id, "mega")


@pytest.mark.asyncio
async def test_confirm_grants_credits_once(db, account, fake_gateway):
    payment = await prepare_credit_purchase(db, account.id, "basic")

    first = await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)
    second = await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)

    assert first["credits_added"] == 50
    assert first["credit_balance"] == 50
    assert first["already_completed"] is False
    assert second["already_completed"] is True
    assert second["credits_added"] == 0
    assert fake_gateway.count("confirm") == 1
    refreshed = await _reload_payment(db, payment.id)
    assert refreshed.status == "completed"
    assert refreshed.gateway_transaction_id == "pay_basic"
    assert await ledger.replay_balance(db, account.id) == 50


@pytest.mark.asyncio
async def test_client_amount_mismatch_never_reaches_gateway(db, account, fake_gateway):
    payment = await prepare_credit_purchase(db, account.id, "basic")

    with pytest.raises(AmountMismatchError):
        await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 100, gateway=fake_gateway)

    assert fake_gateway.calls == []
    assert (await _reload_payment(db, payment.id)).status == "pending"


@pytest.mark.asyncio
async def test_gateway_confirmed_amount_mismatch_fails_payment(db, account, fake_gateway):
    payment = await prepare_credit_purchase(db, account.id, "basic")
    fake_gateway.confirm_results.append(
        GatewayPayment.from_payload(
            {"paymentKey": "pay_basic", "orderId": payment.order_id, "status": "DONE", "totalAmount": 100}
        )
    )

    with pytest.raises(AmountMismatchError):
        await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)

    refreshed = await _reload_payment(db, payment.id)
    assert refreshed.status == "failed"
    assert refreshed.failure_code == "AMOUNT_MISMATCH"
    assert await ledger.replay_balance(db, account.id) == 0


@pytest.mark.asyncio
async def test_terminal_decline_fails_payment_and_blocks_reconfirm(db, account, fake_gateway):
    payment = await prepare_credit_purchase(db, account.id, "basic")
    fake_gateway.confirm_results.append(GatewayError("INVALID_CARD_NUMBER", "bad card", status_code=400))

    with pytest.raises(GatewayError):
        await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)

    assert (await _reload_payment(db, payment.id)).status == "failed"
    with pytest.raises(PolicyError):
        await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)


@pytest.mark.asyncio
async def test_retryable_decline_keeps_payment_pending(db, account, fake_gateway):
    payment = await prepare_credit_purchase(db, account.id, "basic")
    fake_gateway.confirm_results.append(GatewayError("TIMEOUT", "timed out"))

    with pytest.raises(GatewayError):
        await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)

    assert (await _reload_payment(db, payment.id)).status == "pending"
    result = await confirm_credit_purchase(db, account.id, payment.order_id, "pay_basic", 9900, gateway=fake_gateway)
    assert result["credits_added"] == 50


@pytest.mark.asyncio
async def test_confirm_validates_order_id(db, account, fake_gateway):
    with pytest.raises(ValidationError):
        await confirm_credit_purchase(db, account.id, "SUB_20260301120000_ABCDEF12", "pay", 9900, gateway=fake_gateway)
    with pytest.raises(NotFoundError):
        await confirm_credit_purchase(db, account.id, "CRD_20260301120000_ABCDEF12", "pay", 9900, gateway=fake_gateway)


@pytest.mark.asyncio
async def test_credit_purchase_endpoints(client, account, auth_headers, fake_gateway):
    prepared = await client.post("/billing/credits/prepare", json={"package_id": "premium"}, headers=auth_headers)
    assert prepared.status_code == 200
    order = prepared.json()
    assert order["credits"] == 350
    assert order["amount"] == 49900

    mismatch = await client.post(
        "/billing/credits/confirm",
        json={"order_id": order["order_id"], "payment_key": "pay_p", "amount": 1000},
        headers=auth_headers,
    )
    assert mismatch.status_code == 422

    confirmed = await client.post(
        "/billing/credits/confirm",
        json={"order_id": order["order_id"], "payment_key": "pay_p", "amount": 49900},
        headers=auth_headers,
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["credit_balance"] == 350

    entitlement = await client.get("/billing/entitlement", headers=auth_headers)
    assert entitlement.json()["credit_balance"] == 350
