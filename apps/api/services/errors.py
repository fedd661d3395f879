"""Domain errors raised by billing services and translated by routers."""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing and entitlement failures."""

    code = "billing_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(BillingError):
    """Rejected before any side effect: malformed amounts, ids or plan names."""

    code = "validation_error"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class UnknownPlanError(ValidationError):
    code = "unknown_plan"


class InvalidOrderIdError(ValidationError):
    code = "invalid_order_id"


class PolicyError(BillingError):
    """A user-facing rejection that will not succeed on retry."""

    code = "policy_rejected"


class InsufficientBalanceError(PolicyError):
    code = "insufficient_balance"


class DuplicateActiveSubscriptionError(PolicyError):
    code = "duplicate_active_subscription"


class RefundNotAllowedError(PolicyError):
    code = "refund_not_allowed"

    def __init__(self, message: str, restrictions: list[str] | None = None) -> None:
        super().__init__(message)
        self.restrictions = list(restrictions or [])


class NotFoundError(BillingError):
    code = "not_found"


class AmountMismatchError(ValidationError):
    """Gateway-reported amount differs from the locally recorded payment amount."""

    code = "amount_mismatch"
