from datetime import datetime, timedelta, timezone

import pytest

from config import settings
from models.payment import Payment
from models.refund_request import RefundRequest
from services import credits as ledger
from services.gateway import GatewayError, GatewayPayment
from services.refund_retry import run_refund_retries
from services.refunds import list_manual_review


async def _seed(db, account, suffix="A", status="failed", retry_count=0, gateway_response=None, created_offset=0, claimed_at=None):
    payment = Payment(
        account_id=account.id,
        order_id=f"CRD_20260301120000_ABCDEF1{suffix}",
        gateway_transaction_id=f"pay_retry_{suffix}",
        kind="credit_purchase",
        status="completed",
        amount=9900,
        metadata_json={"package_id": "basic", "credits": 50, "validity_days": 90},
        paid_at=datetime.now(timezone.utc) - timedelta(days=1),
    )
    db.add(payment)
    await db.commit()
    await ledger.credit(db, account.id, 50, "purchase", "Purchased 50 credits", related_payment_id=payment.id)
    request = RefundRequest(
        payment_id=payment.id,
        account_id=account.id,
        requested_amount=9900,
        refund_type="full",
        reason="Customer request",
        status=status,
        retry_count=retry_count,
        last_error="FAILED_REFUND_PROCESS: try later",
        gateway_response=gateway_response,
        claimed_at=claimed_at,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=10 - created_offset),
    )
    db.add(request)
    await db.commit()
    return payment, request


async def _reload(db, model, row_id):
    return await db.get(model, row_id, populate_existing=True)


def _refunded(payment):
    return GatewayPayment.from_payload(
        {
            "paymentKey": payment.gateway_transaction_id,
            "orderId": payment.order_id,
            "status": "CANCELED",
            "totalAmount": payment.amount,
            "balanceAmount": 0,
        }
    )


@pytest.mark.asyncio
async def test_retry_success_completes_request_and_settles(db, account, fake_gateway):
    payment, request = await _seed(db, account)
    fake_gateway.cancel_results.append(_refunded(payment))

    result = await run_refund_retries(db)

    assert result.processed == 1
    assert result.succeeded == 1
    refreshed = await _reload(db, RefundRequest, request.id)
    assert refreshed.status == "completed"
    assert refreshed.approved_amount == 9900
    assert (await _reload(db, Payment, payment.id)).status == "refunded"
    assert await ledger.replay_balance(db, account.id) == 0


@pytest.mark.asyncio
async def test_retry_cancel_reuses_the_request_idempotency_key(db, account, fake_gateway):
    _, request = await _seed(db, account)
    fake_gateway.cancel_results.append(GatewayError("PROVIDER_ERROR", "upstream", status_code=502))

    await run_refund_retries(db)

    assert fake_gateway.idempotency_keys == [f"refund-{request.id}"]


@pytest.mark.asyncio
async def test_stale_processing_request_is_released_and_retried(db, account, fake_gateway):
    now = datetime.now(timezone.utc)
    stale_payment, stale = await _seed(
        db, account, suffix="S", status="processing", claimed_at=now - timedelta(minutes=30)
    )
    _, live = await _seed(
        db, account, suffix="L", status="processing", claimed_at=now - timedelta(minutes=1), created_offset=5
    )
    fake_gateway.cancel_results.append(_refunded(stale_payment))

    result = await run_refund_retries(db, now=now)

    assert result.reclaimed == 1
    assert result.processed == 1
    released = await _reload(db, RefundRequest, stale.id)
    assert released.status == "completed"
    assert released.retry_count == 1
    assert fake_gateway.idempotency_keys == [f"refund-{stale.id}"]
    untouched = await _reload(db, RefundRequest, live.id)
    assert untouched.status == "processing"
    assert untouched.retry_count == 0


@pytest.mark.asyncio
async def test_stale_processing_request_out_of_attempts_goes_to_manual_review(db, account, fake_gateway):
    now = datetime.now(timezone.utc)
    _, request = await _seed(
        db,
        account,
        status="processing",
        retry_count=settings.REFUND_RETRY_MAX_ATTEMPTS - 1,
        claimed_at=now - timedelta(hours=2),
    )

    result = await run_refund_retries(db, now=now)

    assert result.reclaimed == 1
    assert result.processed == 0
    assert fake_gateway.calls == []
    review = await list_manual_review(db)
    assert [item["id"] for item in review] == [request.id]
    assert "lease expired" in review[0]["last_error"]


@pytest.mark.asyncio
async def test_unexpected_error_during_retry_leaves_request_failed(db, account, fake_gateway):
    _, request = await _seed(db, account)
    fake_gateway.cancel_results.append(RuntimeError("connection pool closed"))

    result = await run_refund_retries(db)

    assert result.failed == 1
    refreshed = await _reload(db, RefundRequest, request.id)
    assert refreshed.status == "failed"
    assert refreshed.retry_count == 1
    assert "connection pool closed" in refreshed.last_error


@pytest.mark.asyncio
async def test_retryable_error_increments_retry_count(db, account, fake_gateway):
    _, request = await _seed(db, account)
    fake_gateway.cancel_results.append(GatewayError("PROVIDER_ERROR", "upstream", status_code=502))

    result = await run_refund_retries(db)

    assert result.failed == 1
    refreshed = await _reload(db, RefundRequest, request.id)
    assert refreshed.status == "failed"
    assert refreshed.retry_count == 1
    assert refreshed.last_error.startswith("PROVIDER_ERROR")


@pytest.mark.asyncio
async def test_terminal_error_rejects_without_counting(db, account, fake_gateway):
    _, request = await _seed(db, account)
    fake_gateway.cancel_results.append(GatewayError("NOT_CANCELABLE_PAYMENT", "cannot cancel", status_code=403))

    result = await run_refund_retries(db)

    assert result.rejected == 1
    refreshed = await _reload(db, RefundRequest, request.id)
    assert refreshed.status == "rejected"
    assert refreshed.retry_count == 0
    assert "not recoverable" in refreshed.rejection_reason


@pytest.mark.asyncio
async def test_stored_gateway_response_settles_without_second_cancel(db, account, fake_gateway):
    payment, request = await _seed(
        db,
        account,
        gateway_response={
            "paymentKey": "pay_retry_A",
            "orderId": "CRD_20260301120000_ABCDEF1A",
            "status": "CANCELED",
            "totalAmount": 9900,
            "balanceAmount": 0,
        },
    )

    result = await run_refund_retries(db)

    assert result.succeeded == 1
    assert fake_gateway.count("cancel") == 0
    assert (await _reload(db, RefundRequest, request.id)).status == "completed"
    assert (await _reload(db, Payment, payment.id)).refunded_amount == 9900


@pytest.mark.asyncio
async def test_exhausted_requests_are_left_for_manual_review(db, account, fake_gateway):
    _, request = await _seed(db, account, retry_count=settings.REFUND_RETRY_MAX_ATTEMPTS)

    result = await run_refund_retries(db)

    assert result.processed == 0
    assert result.max_retries_reached == 1
    assert fake_gateway.calls == []
    review = await list_manual_review(db)
    assert [item["id"] for item in review] == [request.id]
    assert review[0]["gateway_refunded"] is False


@pytest.mark.asyncio
async def test_completed_and_rejected_requests_are_not_retried(db, account, fake_gateway):
    await _seed(db, account, suffix="B", status="completed")
    await _seed(db, account, suffix="C", status="rejected")

    result = await run_refund_retries(db)

    assert result.processed == 0
    assert fake_gateway.calls == []


@pytest.mark.asyncio
async def test_deadline_stops_claiming_more_work(db, account, fake_gateway):
    first_payment, first = await _seed(db, account, suffix="D")
    _, second = await _seed(db, account, suffix="E", created_offset=5)
    fake_gateway.cancel_results.append(_refunded(first_payment))
    ticks = iter([0.0, 0.0, 10.0, 10.0, 10.0])

    result = await run_refund_retries(db, clock=lambda: next(ticks), budget_seconds=5)

    assert result.processed == 1
    assert result.deadline_reached is True
    assert (await _reload(db, RefundRequest, first.id)).status == "completed"
    assert (await _reload(db, RefundRequest, second.id)).status == "failed"


@pytest.mark.asyncio
async def test_cron_rejects_bad_secret(client):
    response = await client.post("/cron/retry-refunds", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401

    missing = await client.get("/cron/retry-refunds")
    assert missing.status_code == 401


@pytest.mark.asyncio
async def test_cron_refuses_when_secret_unset(client, cron_headers, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")

    response = await client.get("/cron/retry-refunds", headers=cron_headers)

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_cron_retry_endpoint_reports_counts(client, db, account, cron_headers, fake_gateway):
    payment, _ = await _seed(db, account)
    fake_gateway.cancel_results.append(_refunded(payment))

    response = await client.get("/cron/retry-refunds", headers=cron_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["succeeded"] == 1
    assert "execution_time_ms" in body

    again = await client.post("/cron/retry-refunds", headers=cron_headers)
    assert again.json()["processed"] == 0


@pytest.mark.asyncio
async def test_cron_expire_and_renew_endpoints(client, account, cron_headers, fake_gateway):
    expired = await client.post("/cron/expire-credits", headers=cron_headers)
    renewed = await client.post("/cron/renew-subscriptions", headers=cron_headers)

    assert expired.status_code == 200
    assert "execution_time_ms" in expired.json()
    assert renewed.status_code == 200
    assert renewed.json()["processed"] == 0


@pytest.mark.asyncio
async def test_admin_manual_review_listing(client, db, account, cron_headers):
    await _seed(db, account, retry_count=settings.REFUND_RETRY_MAX_ATTEMPTS)

    unauthorized = await client.get("/admin/refunds/manual-review")
    listed = await client.get("/admin/refunds/manual-review", headers=cron_headers)

    assert unauthorized.status_code == 401
    assert listed.status_code == 200
    assert listed.json()["count"] == 1
