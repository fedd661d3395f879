"""Models package."""

from .account import Account
from .credit_ledger import CreditLedger
from .payment import Payment
from .subscription import Subscription
from .refund_request import RefundRequest
from .webhook_event import WebhookEvent
