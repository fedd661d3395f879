"""Refund request model driven by the refund retry job."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


REFUND_STATUSES = ("pending", "processing", "completed", "failed", "rejected")
TERMINAL_REFUND_STATUSES = ("completed", "rejected")


class RefundRequest(Base):
    """User-initiated refund. completed and rejected rows are never modified again."""

    __tablename__ = "refund_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    requested_amount = Column(Integer, nullable=False)
    approved_amount = Column(Integer, nullable=True)
    refund_type = Column(String, nullable=False)
    reason = Column(String, nullable=False, default="Customer request")
    status = Column(String, nullable=False, default="pending", index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    # Set whenever a worker moves the row to processing; stale claims are released by the retry job.
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment", back_populates="refund_requests")
