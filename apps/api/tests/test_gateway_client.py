import base64
import json

import httpx
import pytest

from services.gateway import GatewayClient, GatewayError, classify_error_code, map_error_to_user_message


def _client(handler, max_retries=3, sleeps=None):
    async def fake_sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)

    return GatewayClient(
        "test_sk_secret",
        base_url="https://gateway.test/v1",
        max_retries=max_retries,
        base_delay=1.0,
        max_delay=10.0,
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
        jitter=lambda: 0.0,
    )


PAYMENT_BODY = {
    "paymentKey": "pay_123",
    "orderId": "CRD_20260101000000_ABCDEF12",
    "status": "DONE",
    "totalAmount": 24900,
    "balanceAmount": 24900,
    "method": "CARD",
}


@pytest.mark.asyncio
async def test_requests_carry_basic_auth_and_parse_payment():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=PAYMENT_BODY)

    client = _client(handler)
    payment = await client.confirm_payment("pay_123", PAYMENT_BODY["orderId"], 24900)
    await client.aclose()

    expected = "Basic " + base64.b64encode(b"test_sk_secret:").decode()
    assert seen["auth"] == expected
    assert seen["path"] == "/v1/payments/confirm"
    assert seen["body"] == {"paymentKey": "pay_123", "orderId": PAYMENT_BODY["orderId"], "amount": 24900}
    assert payment.status == "DONE"
    assert payment.total_amount == 24900


def test_secret_is_required():
    with pytest.raises(ValueError):
        GatewayClient("  ")


@pytest.mark.asyncio
async def test_partial_cancel_sends_amount_and_full_cancel_does_not():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={**PAYMENT_BODY, "status": "PARTIAL_CANCELED", "balanceAmount": 12450})

    client = _client(handler)
    partial = await client.cancel_payment("pay_123", "Customer request", 12450)
    await client.cancel_payment("pay_123", "Customer request")

    assert bodies == [
        {"cancelReason": "Customer request", "cancelAmount": 12450},
        {"cancelReason": "Customer request"},
    ]
    assert partial.balance_amount == 12450


@pytest.mark.asyncio
async def test_cancel_sends_the_same_idempotency_key_on_every_attempt():
    keys = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys.append(request.headers.get("Idempotency-Key"))
        if len(keys) == 1:
            return httpx.Response(503, json={"code": "SERVICE_UNAVAILABLE", "message": "busy"})
        return httpx.Response(200, json={**PAYMENT_BODY, "status": "CANCELED"})

    client = _client(handler, sleeps=[])
    await client.cancel_payment("pay_123", "Customer request", idempotency_key="refund-req-1")
    await client.cancel_payment("pay_123", "Customer request")

    assert keys == ["refund-req-1", "refund-req-1", None]


@pytest.mark.asyncio
async def test_5xx_is_retried_with_exponential_backoff():
    calls = []
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"code": "SERVICE_UNAVAILABLE", "message": "busy"})
        return httpx.Response(200, json=PAYMENT_BODY)

    client = _client(handler, sleeps=sleeps)
    payment = await client.get_payment("pay_123")

    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]
    assert payment.payment_key == "pay_123"


@pytest.mark.asyncio
async def test_exhausted_retries_raise_retryable_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"code": "FAILED_INTERNAL_SYSTEM_PROCESSING", "message": "oops"})

    client = _client(handler, max_retries=2)
    with pytest.raises(GatewayError) as excinfo:
        await client.cancel_payment("pay_123", "x")

    assert excinfo.value.code == "FAILED_INTERNAL_SYSTEM_PROCESSING"
    assert excinfo.value.status_code == 500
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_4xx_is_terminal_and_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"code": "ALREADY_CANCELED_PAYMENT", "message": "already canceled"})

    client = _client(handler)
    with pytest.raises(GatewayError) as excinfo:
        await client.cancel_payment("pay_123", "x")

    assert len(calls) == 1
    assert not excinfo.value.retryable
    assert excinfo.value.error_class == "terminal"


@pytest.mark.asyncio
async def test_timeouts_become_retryable_timeout_error():
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler, max_retries=2, sleeps=sleeps)
    with pytest.raises(GatewayError) as excinfo:
        await client.get_payment("pay_123")

    assert excinfo.value.code == "TIMEOUT"
    assert excinfo.value.retryable
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_network_error_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler, max_retries=0)
    with pytest.raises(GatewayError) as excinfo:
        await client.get_payment("pay_123")

    assert excinfo.value.code == "NETWORK_ERROR"
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_charge_billing_key_and_issue():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/billing/authorizations/issue"):
            return httpx.Response(
                200,
                json={"billingKey": "bk_1", "customerKey": "cust_1", "card": {"company": "Hyundai", "number": "4330****1234"}},
            )
        assert request.url.path == "/v1/billing/bk_1"
        body = json.loads(request.content)
        return httpx.Response(200, json={**PAYMENT_BODY, "orderId": body["orderId"], "totalAmount": body["amount"]})

    client = _client(handler)
    issued = await client.issue_billing_key("auth_1", "cust_1")
    charged = await client.charge_billing_key("bk_1", "cust_1", 29900, "SUB_20260101000000_ABCDEF12", "Pro")

    assert issued.billing_key == "bk_1"
    assert issued.card_company == "Hyundai"
    assert charged.total_amount == 29900


@pytest.mark.parametrize(
    "code, status, expected",
    [
        ("TIMEOUT", None, "retryable"),
        ("FAILED_REFUND_PROCESS", 400, "retryable"),
        ("ALREADY_REFUND_PAYMENT", 500, "terminal"),
        ("SOMETHING_NEW", 502, "retryable"),
        ("SOMETHING_NEW", 400, "terminal"),
        (None, None, "terminal"),
    ],
)
def test_error_classification(code, status, expected):
    assert classify_error_code(code, status) == expected


def test_user_messages_fall_back_to_default():
    assert map_error_to_user_message("CARD_LIMIT_EXCEEDED") == "The card limit has been exceeded."
    assert "try again" in map_error_to_user_message("UNKNOWN_CODE")
