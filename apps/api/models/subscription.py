"""Subscription model."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "paused", "canceled")


class Subscription(Base):
    """Recurring plan renewed in place each period."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period_order"),
        Index(
            "uq_subscriptions_one_active_per_account",
            "account_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    plan = Column(String, nullable=False)
    billing_cycle = Column(String, nullable=False, default="monthly")
    status = Column(String, nullable=False, default="active", index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    pending_plan = Column(String, nullable=True)
    pending_billing_cycle = Column(String, nullable=True)
    # Dunning state for a renewal charge that failed with a retryable error.
    renewal_retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_renewal_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", back_populates="subscriptions")
