"""
Encryption at rest for vendor credential blobs (.p8 keys, service-account JSON).

Fernet with the key from ENCRYPTION_KEY. Without a key (development only) blobs
are stored as submitted.
"""

import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from review_responder.config import get_settings
from review_responder.connectors.base import CredentialFormatError

logger = logging.getLogger(__name__)

# Every Fernet token starts with the version byte 0x80, base64 "gAAAAA"
_TOKEN_PREFIX = "gAAAAA"


class CredentialCipher:
    def __init__(self, key: Optional[str]):
        self._fernet = Fernet(key.encode()) if key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, blob: str) -> str:
        if self._fernet is None:
            return blob
        return self._fernet.encrypt(blob.encode()).decode()

    def decrypt(self, stored: str) -> str:
        """
        Plaintext rows written before a key was configured come back unchanged.
        A token that no longer decrypts (rotated key) makes the credential unusable.
        """
        if self._fernet is None or not stored.startswith(_TOKEN_PREFIX):
            return stored
        try:
            return self._fernet.decrypt(stored.encode()).decode()
        except InvalidToken:
            raise CredentialFormatError("Stored credentials cannot be decrypted with the current key; re-submit them")


@lru_cache
def get_cipher() -> CredentialCipher:
    settings = get_settings()
    if not settings.encryption_key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        logger.warning("ENCRYPTION_KEY not set: vendor credentials are stored in plaintext (development only)")
        return CredentialCipher(None)
    try:
        return CredentialCipher(settings.encryption_key)
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
