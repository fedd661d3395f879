"""Gateway client contracts and error classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


ErrorClass = Literal["retryable", "terminal"]

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

NETWORK_ERROR_CODES = frozenset({"TIMEOUT", "NETWORK_ERROR", "MAX_RETRIES_EXCEEDED"})

RETRYABLE_ERROR_CODES = NETWORK_ERROR_CODES | frozenset(
    {
        "FAILED_INTERNAL_SYSTEM_PROCESSING",
        "FAILED_PAYMENT_INTERNAL_SYSTEM_PROCESSING",
        "FAILED_REFUND_PROCESS",
        "SERVICE_UNAVAILABLE",
        "PROVIDER_ERROR",
        "TOO_MANY_REQUESTS",
    }
)

TERMINAL_ERROR_CODES = frozenset(
    {
        "INVALID_CARD_NUMBER",
        "INVALID_CARD_EXPIRATION",
        "INVALID_CARD_CVC",
        "INVALID_STOPPED_CARD",
        "EXCEED_MAX_CARD_INSTALLMENT_PLAN",
        "NOT_ALLOWED_CARD_COMPANY",
        "CARD_LIMIT_EXCEEDED",
        "CARD_LOST_OR_STOLEN",
        "CARD_RESTRICTED",
        "REJECT_CARD_PAYMENT",
        "INVALID_PAYMENT_KEY",
        "ALREADY_PROCESSED_PAYMENT",
        "PAYMENT_NOT_FOUND",
        "NOT_FOUND_PAYMENT",
        "INVALID_AMOUNT",
        "EXCEED_MAX_AMOUNT",
        "INVALID_BILLING_KEY",
        "BILLING_KEY_DELETED",
        "NOT_REGISTERED_CUSTOMER_KEY",
        "ALREADY_REFUND_PAYMENT",
        "ALREADY_CANCELED_PAYMENT",
        "EXCEED_REFUND_AMOUNT",
        "EXCEED_CANCEL_AMOUNT",
        "NOT_ALLOWED_PARTIAL_REFUND",
        "NOT_CANCELABLE_PAYMENT",
        "PAY_PROCESS_CANCELED",
        "PAY_PROCESS_ABORTED",
        "USER_CANCEL",
        "FORBIDDEN_REQUEST",
        "UNAUTHORIZED_KEY",
        "INVALID_REQUEST",
    }
)

USER_MESSAGES: Dict[str, str] = {
    "INVALID_CARD_NUMBER": "The card number is invalid.",
    "INVALID_CARD_EXPIRATION": "The card expiry date is invalid.",
    "INVALID_CARD_CVC": "The card security code (CVC) is invalid.",
    "EXCEED_MAX_CARD_INSTALLMENT_PLAN": "The installment period exceeds the card limit.",
    "NOT_ALLOWED_CARD_COMPANY": "This card issuer is not supported.",
    "CARD_LIMIT_EXCEEDED": "The card limit has been exceeded.",
    "CARD_LOST_OR_STOLEN": "This card has been reported lost or stolen.",
    "CARD_RESTRICTED": "This card is restricted.",
    "INVALID_PAYMENT_KEY": "The payment could not be found.",
    "ALREADY_PROCESSED_PAYMENT": "This payment has already been processed.",
    "PAYMENT_NOT_FOUND": "The payment could not be found.",
    "INVALID_AMOUNT": "The payment amount is invalid.",
    "EXCEED_MAX_AMOUNT": "The maximum payment amount was exceeded.",
    "INVALID_BILLING_KEY": "The saved payment method is invalid.",
    "BILLING_KEY_DELETED": "The saved payment method was deleted.",
    "NOT_REGISTERED_CUSTOMER_KEY": "The customer is not registered.",
    "ALREADY_REFUND_PAYMENT": "This payment has already been refunded.",
    "EXCEED_REFUND_AMOUNT": "The refundable amount was exceeded.",
    "NOT_ALLOWED_PARTIAL_REFUND": "Partial refunds are not allowed for this payment.",
    "FORBIDDEN_REQUEST": "The request is not permitted.",
    "UNAUTHORIZED_KEY": "Gateway authentication failed.",
    "FAILED_INTERNAL_SYSTEM_PROCESSING": "The payment could not be processed. Please try again shortly.",
    "SERVICE_UNAVAILABLE": "The payment service is temporarily unavailable. Please try again shortly.",
}
DEFAULT_USER_MESSAGE = "The payment could not be processed. Please try again shortly."


def classify_error_code(code: Optional[str], status_code: Optional[int] = None) -> ErrorClass:
    """Single source of truth for retry decisions.

    Known codes win; an unknown code is retryable only when the HTTP status was.
    """
    normalized = (code or "").strip().upper()
    if normalized in RETRYABLE_ERROR_CODES:
        return "retryable"
    if normalized in TERMINAL_ERROR_CODES:
        return "terminal"
    if status_code is not None and status_code in RETRYABLE_STATUS_CODES:
        return "retryable"
    return "terminal"


def map_error_to_user_message(code: Optional[str]) -> str:
    return USER_MESSAGES.get((code or "").upper(), DEFAULT_USER_MESSAGE)


class GatewayError(Exception):
    """Normalized gateway failure with a provider error code."""

    def __init__(self, code: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def error_class(self) -> ErrorClass:
        return classify_error_code(self.code, self.status_code)

    @property
    def retryable(self) -> bool:
        return self.error_class == "retryable"

    @property
    def user_message(self) -> str:
        return map_error_to_user_message(self.code)

    def __repr__(self) -> str:
        return f"GatewayError(code={self.code!r}, status_code={self.status_code!r})"


@dataclass(frozen=True)
class CancelRecord:
    cancel_amount: int
    canceled_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    transaction_key: Optional[str] = None


@dataclass(frozen=True)
class GatewayPayment:
    payment_key: str
    order_id: str
    status: str
    total_amount: int
    balance_amount: Optional[int] = None
    method: Optional[str] = None
    approved_at: Optional[str] = None
    cancels: List[CancelRecord] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayPayment":
        cancels = [
            CancelRecord(
                cancel_amount=int(item.get("cancelAmount") or 0),
                canceled_at=item.get("canceledAt"),
                cancel_reason=item.get("cancelReason"),
                transaction_key=item.get("transactionKey"),
            )
            for item in payload.get("cancels") or []
            if isinstance(item, dict)
        ]
        balance = payload.get("balanceAmount")
        return cls(
            payment_key=str(payload.get("paymentKey") or ""),
            order_id=str(payload.get("orderId") or ""),
            status=str(payload.get("status") or ""),
            total_amount=int(payload.get("totalAmount") or 0),
            balance_amount=int(balance) if balance is not None else None,
            method=payload.get("method"),
            approved_at=payload.get("approvedAt"),
            cancels=cancels,
            raw=dict(payload),
        )


@dataclass(frozen=True)
class BillingKeyIssue:
    billing_key: str
    customer_key: str
    card_company: Optional[str] = None
    card_number: Optional[str] = None
