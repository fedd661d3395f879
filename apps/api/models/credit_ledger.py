"""CreditLedger model for auditable balance changes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_TRANSACTION_TYPES = (
    "purchase",
    "subscription_grant",
    "usage",
    "refund",
    "expiry",
    "admin_adjustment",
)


class CreditLedger(Base):
    """Immutable credit ledger entry. balance_after is the running balance after this row."""

    __tablename__ = "credit_transactions"
    __table_args__ = (UniqueConstraint("account_id", "sequence", name="uq_credit_transactions_account_sequence"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    # Per-account insertion order, 1-based and gapless.
    sequence = Column(Integer, nullable=False)
    entry_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    related_payment_id = Column(String, ForeignKey("payments.id"), nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="credit_entries")
