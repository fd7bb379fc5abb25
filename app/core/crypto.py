"""LeadZap – Credential Encryption.

Fernet encryption for provider access tokens stored on the company row.
The key is derived from AUTH_SECRET.
"""

import base64
import hashlib

import structlog
from cryptography.fernet import Fernet, InvalidToken

from config.settings import get_settings

logger = structlog.get_logger()

# Marks values in the database that went through encrypt_value()
ENCRYPTION_PREFIX = "ENC:"

_fernet_instance: Fernet | None = None


def _get_fernet() -> Fernet:
    """Initialize Fernet instance lazily using AUTH_SECRET."""
    global _fernet_instance
    if _fernet_instance is not None:
        return _fernet_instance

    secret = get_settings().auth_secret or "insecure-fallback-secret-for-dev-only"
    key_bytes = hashlib.sha256(secret.encode()).digest()
    _fernet_instance = Fernet(base64.urlsafe_b64encode(key_bytes))
    return _fernet_instance


def encrypt_value(plain_text: str | None) -> str | None:
    """Encrypt a string and return it with the ENC: prefix."""
    if not plain_text or plain_text.startswith(ENCRYPTION_PREFIX):
        return plain_text
    token = _get_fernet().encrypt(plain_text.encode()).decode()
    return f"{ENCRYPTION_PREFIX}{token}"


def decrypt_value(stored: str | None) -> str:
    """Decrypt an ENC:-prefixed value.

    Plain values pass through unchanged. A value that cannot be decrypted
    (rotated AUTH_SECRET, corrupted row) yields "" so callers treat the
    credential as missing instead of sending ciphertext to the provider.
    """
    if not stored:
        return ""
    if not stored.startswith(ENCRYPTION_PREFIX):
        return stored
    try:
        return _get_fernet().decrypt(stored[len(ENCRYPTION_PREFIX):].encode()).decode()
    except InvalidToken:
        logger.error("crypto.decryption_failed", reason="invalid_token")
        return ""
