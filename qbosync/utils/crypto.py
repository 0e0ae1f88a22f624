"""
Encryption of OAuth tokens at rest.

Access and refresh tokens are stored Fernet-encrypted (AES-128-CBC + HMAC)
so a copy of the database file alone does not grant access to a company's
books.
"""

from functools import lru_cache

import structlog
from cryptography.fernet import Fernet, InvalidToken

from qbosync.config import get_settings

logger = structlog.get_logger(__name__)


class TokenDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted with the configured key."""

    pass


class TokenCipher:
    """Symmetric cipher for OAuth tokens."""

    def __init__(self, key: str | bytes):
        if isinstance(key, str):
            key = key.encode("utf-8")
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenDecryptionError("Stored token could not be decrypted") from e


@lru_cache
def get_token_cipher() -> TokenCipher:
    """
    Get the process-wide token cipher.

    In dev mode without a configured key an ephemeral key is generated;
    tokens written with it are unreadable after a restart.
    """
    settings = get_settings()
    key = settings.token_encryption_key

    if not key:
        if not settings.dev_mode:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY must be set outside dev mode")
        logger.warning("token_encryption_key_missing", using="ephemeral_key")
        key = Fernet.generate_key().decode("ascii")

    return TokenCipher(key)
