"""Time helpers shared by billing services."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def reference_tz() -> ZoneInfo:
    return ZoneInfo(settings.ENTITLEMENT_TIMEZONE)


def start_of_day(now: Optional[datetime] = None) -> datetime:
    """Start of the calendar day containing `now` in the entitlement timezone, as UTC."""
    current = ensure_utc(now) or utcnow()
    local = current.astimezone(reference_tz())
    local_midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return local_midnight.astimezone(timezone.utc)
