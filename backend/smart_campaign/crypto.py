"""
At-rest encryption for the stored Meta access token.

Fernet symmetric encryption from the `cryptography` package, keyed by the
ENCRYPTION_KEY env var. Without a key (development only) values pass through
unchanged.
"""

import logging
from functools import lru_cache
from cryptography.fernet import Fernet, InvalidToken
from smart_campaign.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _cipher_for(key: str) -> Fernet:
    try:
        return Fernet(key.encode())
    except Exception as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc


def _cipher() -> Fernet | None:
    settings = get_settings()
    if not settings.encryption_key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        return None
    return _cipher_for(settings.encryption_key)


def encrypt_token(plaintext: str | None) -> str | None:
    if plaintext is None:
        return None
    f = _cipher()
    if f is None:
        logger.debug("ENCRYPTION_KEY not set — storing token in plaintext (development).")
        return plaintext
    return f.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str | None) -> str | None:
    if ciphertext is None:
        return None
    f = _cipher()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Stored before encryption was enabled
        logger.warning("Failed to decrypt token — returning as-is (may be pre-encryption plaintext).")
        return ciphertext
