"""Account model carrying plan and entitlement state."""

from sqlalchemy import Column, String, DateTime, Integer, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Billing account. Entitlement columns are written only by services.credits."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_balance_non_negative"),
        CheckConstraint("daily_quota_remaining >= 0", name="ck_accounts_daily_quota_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    plan = Column(String, nullable=False, default="starter")
    plan_expires_at = Column(DateTime(timezone=True), nullable=True)
    daily_quota_remaining = Column(Integer, nullable=False, default=0)
    quota_reset_at = Column(DateTime(timezone=True), nullable=True)
    credit_balance = Column(Integer, nullable=False, default=0)
    customer_key = Column(String, unique=True, nullable=True, index=True)
    billing_key_encrypted = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="account", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="account", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="account", cascade="all, delete-orphan")
