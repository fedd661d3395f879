"""Payment model correlating outbound charges with gateway callbacks."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PAYMENT_STATUSES = ("pending", "completed", "failed", "canceled", "refunded", "partial_refunded")
PAYMENT_KINDS = ("subscription", "credit_purchase")


class Payment(Base):
    """A single charge. order_id is the idempotency key shared with the gateway."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    order_id = Column(String, unique=True, nullable=False, index=True)
    gateway_transaction_id = Column(String, unique=True, nullable=True, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    amount = Column(Integer, nullable=False)
    refunded_amount = Column(Integer, nullable=False, default=0)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True, index=True)
    metadata_json = Column(JSON, nullable=True)
    failure_code = Column(String, nullable=True)
    failure_message = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", back_populates="payments")
    refund_requests = relationship("RefundRequest", back_populates="payment", cascade="all, delete-orphan")
