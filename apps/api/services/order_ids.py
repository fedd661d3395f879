"""Externally visible order identifiers and gateway customer keys."""

from __future__ import annotations

import re
import secrets
import uuid
from datetime import datetime
from typing import Optional

from services.clock import reference_tz, utcnow
from services.errors import InvalidOrderIdError


ORDER_ID_PREFIXES = ("ORD", "SUB", "CRD", "CHG")
_ORDER_ID_RE = re.compile(r"^(ORD|SUB|CRD|CHG)_(\d{14})_([0-9A-F]{8})$")
_ORDER_TYPE_RE = re.compile(r"^(ORD|SUB|CRD|CHG)_")


def generate_order_id(prefix: str = "ORD", now: Optional[datetime] = None) -> str:
    """{PREFIX}_{yyyyMMddHHmmss}_{8 hex}, timestamp in the entitlement timezone."""
    if prefix not in ORDER_ID_PREFIXES:
        raise InvalidOrderIdError(f"Unknown order id prefix: {prefix}")
    stamp = (now or utcnow()).astimezone(reference_tz()).strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{stamp}_{secrets.token_hex(4).upper()}"


def get_order_id_type(order_id: str) -> Optional[str]:
    match = _ORDER_TYPE_RE.match(order_id or "")
    return match.group(1) if match else None


def parse_order_id(order_id: str) -> str:
    """Return the prefix of a well-formed order id or raise InvalidOrderIdError."""
    match = _ORDER_ID_RE.match(order_id or "")
    if not match:
        raise InvalidOrderIdError(f"Malformed order id: {order_id!r}")
    return match.group(1)


def generate_customer_key() -> str:
    return str(uuid.uuid4())
