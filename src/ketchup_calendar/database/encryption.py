"""Encryption of OAuth material at rest.

Stored sign-ins hold long-lived refresh tokens, so they never touch the
database in plaintext. A `TokenCipher` wraps Fernet with a key derived from
the application secret:

- KDF: PBKDF2-HMAC-SHA256, 480,000 iterations
- Salt: ENCRYPTION_SALT (derived from SECRET_KEY when unset)
- Key length: 32 bytes

Rotating SECRET_KEY makes previously stored sign-ins unreadable; the
credential store treats that as "no previous sign-in".
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ketchup_calendar.config import Settings

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 480_000


def derive_key(secret_key: str, salt: str) -> bytes:
    """Derive a urlsafe Fernet key from the application secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))


class TokenCipher:
    """Symmetric cipher for token strings."""

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCipher:
        return cls(derive_key(settings.secret_key, settings.encryption_salt))

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt a token. Empty values are stored as None."""
        if not plaintext:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str | None) -> str | None:
        """Decrypt a stored token.

        Raises:
            ValueError: If the ciphertext was produced with another key or
                is corrupt
        """
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Failed to decrypt stored token: invalid token or key")
            raise ValueError("Failed to decrypt token") from e
