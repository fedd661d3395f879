"""
HTTP client for the card payment gateway.

Every request carries ``Authorization: Basic base64(secret + ":")``. Timeouts, network
errors and 408/429/5xx responses are retried in-call with exponential backoff plus
jitter; whatever is left is raised as a GatewayError whose ``retryable`` flag callers
use to decide between retrying later and giving up.
"""

import asyncio
import base64
import logging
import random
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config import require_gateway_secret, settings
from services.gateway.types import (
    RETRYABLE_STATUS_CODES,
    BillingKeyIssue,
    GatewayError,
    GatewayPayment,
)

logger = logging.getLogger(__name__)


class GatewayClient:
    """
    Thin async wrapper over the gateway's confirm, cancel and billing-key endpoints.

    Example:
        client = get_gateway_client()
        payment = await client.confirm_payment(payment_key, order_id, 24900)
    """

    def __init__(
        self,
        secret_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        if not (secret_key or "").strip():
            raise ValueError("A gateway secret key is required")

        self._auth_header = "Basic " + base64.b64encode(f"{secret_key}:".encode()).decode()
        self._base_url = (base_url or settings.GATEWAY_API_URL).rstrip("/")
        self._timeout = float(timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS)
        self._max_retries = int(max_retries if max_retries is not None else settings.GATEWAY_MAX_RETRIES)
        self._base_delay = float(base_delay if base_delay is not None else settings.GATEWAY_RETRY_BASE_DELAY_SECONDS)
        self._max_delay = float(max_delay if max_delay is not None else settings.GATEWAY_RETRY_MAX_DELAY_SECONDS)
        self._transport = transport
        self._sleep = sleep
        self._jitter = jitter

        # HTTP client (lazy init)
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Authorization": self._auth_header,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def backoff_delay(self, attempt: int) -> float:
        base = self._base_delay * (2 ** attempt)
        return min(base + self._jitter() * 0.3 * base, self._max_delay)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        client = self._get_client()
        response: Optional[httpx.Response] = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await client.request(method, path, json=payload, headers=headers)
            except httpx.TimeoutException as exc:
                if attempt < self._max_retries:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "Gateway timeout %s %s, retrying in %.2fs (attempt %d/%d)",
                        method, path, delay, attempt + 1, self._max_retries,
                    )
                    await self._sleep(delay)
                    continue
                raise GatewayError("TIMEOUT", str(exc) or "Gateway request timed out") from exc
            except httpx.TransportError as exc:
                if attempt < self._max_retries:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "Gateway network error %s %s: %s, retrying in %.2fs (attempt %d/%d)",
                        method, path, exc, delay, attempt + 1, self._max_retries,
                    )
                    await self._sleep(delay)
                    continue
                raise GatewayError("NETWORK_ERROR", str(exc) or "Gateway network error") from exc

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Gateway %s %s -> %d, retrying in %.2fs (attempt %d/%d)",
                    method, path, response.status_code, delay, attempt + 1, self._max_retries,
                )
                await self._sleep(delay)
                continue
            break

        if response is None:
            raise GatewayError("MAX_RETRIES_EXCEEDED", "Gateway retries exhausted")

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                raise GatewayError("PROVIDER_ERROR", "Gateway returned a non-JSON body",
                                   status_code=response.status_code) from exc

        code, message = _parse_error_body(response)
        logger.warning("Gateway API error: %s %s -> %d code=%s", method, path, response.status_code, code)
        raise GatewayError(code, message, status_code=response.status_code)

    async def confirm_payment(self, payment_key: str, order_id: str, amount: int) -> GatewayPayment:
        data = await self._request(
            "POST",
            "/payments/confirm",
            {"paymentKey": payment_key, "orderId": order_id, "amount": amount},
        )
        return GatewayPayment.from_payload(data)

    async def cancel_payment(
        self,
        payment_key: str,
        cancel_reason: str,
        cancel_amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayPayment:
        """Full cancel when cancel_amount is omitted, partial otherwise.

        A repeated call with the same idempotency_key gets the first call's result
        back instead of a second cancel.
        """
        payload: Dict[str, Any] = {"cancelReason": cancel_reason}
        if cancel_amount:
            payload["cancelAmount"] = cancel_amount
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request("POST", f"/payments/{payment_key}/cancel", payload, headers=headers)
        return GatewayPayment.from_payload(data)

    async def issue_billing_key(self, auth_key: str, customer_key: str) -> BillingKeyIssue:
        data = await self._request(
            "POST",
            "/billing/authorizations/issue",
            {"authKey": auth_key, "customerKey": customer_key},
        )
        card = data.get("card") or {}
        return BillingKeyIssue(
            billing_key=str(data.get("billingKey") or ""),
            customer_key=str(data.get("customerKey") or customer_key),
            card_company=card.get("company"),
            card_number=card.get("number"),
        )

    async def charge_billing_key(
        self,
        billing_key: str,
        customer_key: str,
        amount: int,
        order_id: str,
        order_name: str,
    ) -> GatewayPayment:
        data = await self._request(
            "POST",
            f"/billing/{billing_key}",
            {
                "customerKey": customer_key,
                "amount": amount,
                "orderId": order_id,
                "orderName": order_name,
            },
        )
        return GatewayPayment.from_payload(data)

    async def get_payment(self, payment_key: str) -> GatewayPayment:
        data = await self._request("GET", f"/payments/{payment_key}")
        return GatewayPayment.from_payload(data)


def _parse_error_body(response: httpx.Response) -> tuple:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = str(body.get("code") or f"HTTP_{response.status_code}")
    message = str(body.get("message") or response.reason_phrase or "Gateway request failed")
    return code, message


@lru_cache(maxsize=1)
def get_gateway_client() -> GatewayClient:
    """Process-wide client built from settings; raises ValueError when unconfigured."""
    return GatewayClient(require_gateway_secret())
