"""Inbound gateway webhook log."""

import uuid

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    """Write-once record of a received callback; processed_at is the commit marker."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    dedup_key = Column(String, unique=True, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    raw_payload = Column(JSON, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True, index=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
