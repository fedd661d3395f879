"""
Payment secret handling: charge token encryption, webhook signatures, log redaction.
"""

import base64
import hashlib
import hmac
from typing import Any, Dict, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


SENSITIVE_FIELDS = (
    "billingKey",
    "billing_key",
    "billing_key_encrypted",
    "encryptedBillingKey",
    "customerKey",
    "customer_key",
    "secretKey",
    "authKey",
)
REDACTED = "[REDACTED]"


def _get_fernet() -> Fernet:
    """Get Fernet instance from the configured encryption key."""
    key = settings.ENCRYPTION_KEY

    # Keys that are not exactly 32 bytes are stretched with PBKDF2
    if len(key) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"billing_charge_token_salt",
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    else:
        key = base64.urlsafe_b64encode(key.encode())

    return Fernet(key)


def encrypt_billing_key(billing_key: str) -> str:
    """
    Encrypt a reusable charge token for storage on the account row.

    Args:
        billing_key: Plain charge token issued by the gateway

    Returns:
        Fernet token as text
    """
    if not billing_key:
        raise ValueError("billing_key must not be empty")
    return _get_fernet().encrypt(billing_key.encode()).decode()


def decrypt_billing_key(encrypted: str) -> str:
    """
    Decrypt a stored charge token.

    Raises:
        ValueError: the ciphertext is malformed or was produced with another key
    """
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Stored billing key could not be decrypted.") from exc


def compute_webhook_signature(payload: bytes, secret: Optional[str] = None) -> str:
    """Base64 HMAC-SHA256 of the raw request body."""
    key = (secret if secret is not None else settings.WEBHOOK_SECRET).encode()
    digest = hmac.new(key, payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    if not signature:
        return False
    key = secret if secret is not None else settings.WEBHOOK_SECRET
    if not key:
        return False
    expected = compute_webhook_signature(payload, key)
    return hmac.compare_digest(signature.strip().encode(), expected.encode())


def payload_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def mask_card_number(card_number: str) -> str:
    digits = "".join(ch for ch in card_number if ch.isdigit())
    if len(digits) < 4:
        return card_number
    return f"**** **** **** {digits[-4:]}"


def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: Iterable[str] = SENSITIVE_FIELDS) -> Dict[str, Any]:
    """Shallow copy with secret-bearing keys replaced; nested dicts are handled too."""
    fields = set(sensitive_fields)
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if key in fields:
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize_for_logging(value, fields)
        else:
            sanitized[key] = value
    return sanitized
