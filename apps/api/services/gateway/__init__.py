"""Payment gateway client and error vocabulary."""

from services.gateway.client import GatewayClient, get_gateway_client
from services.gateway.types import (
    BillingKeyIssue,
    GatewayError,
    GatewayPayment,
    classify_error_code,
    map_error_to_user_message,
)

__all__ = [
    "BillingKeyIssue",
    "GatewayClient",
    "GatewayError",
    "GatewayPayment",
    "classify_error_code",
    "get_gateway_client",
    "map_error_to_user_message",
]
