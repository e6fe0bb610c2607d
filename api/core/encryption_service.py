"""
Encryption service for protecting DNS provider credentials at rest.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256) from the
cryptography library to encrypt credential blobs stored in the database.
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings

logger = logging.getLogger(__name__)

# Prefix used to identify Fernet-encrypted data
ENCRYPTED_PREFIX = "gAAAAA"


class EncryptionService:
    """
    Symmetric encryption for credential strings.

    Derives a Fernet key from a passphrase via PBKDF2. When no passphrase
    is configured, operates in plaintext passthrough mode.
    """

    def __init__(self, passphrase: Optional[str] = None):
        self._fernet: Optional[Fernet] = None
        self._enabled = False
        self._initialize(passphrase if passphrase is not None else settings.credential_encryption_key)

    def _initialize(self, passphrase: Optional[str]):
        """Derive Fernet key from configured passphrase."""
        if not passphrase:
            logger.warning(
                "CREDENTIAL_ENCRYPTION_KEY is not set. DNS provider credentials will be stored in plaintext."
            )
            return

        # Salt is fixed per installation; the passphrase provides the entropy.
        salt = b"gateway-control-credential-salt-v1"
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))
        self._fernet = Fernet(key)
        self._enabled = True
        logger.info("Encryption service initialized with PBKDF2-derived key")

    @property
    def enabled(self) -> bool:
        """Whether encryption is active."""
        return self._enabled

    def is_encrypted(self, data: str) -> bool:
        """Check if data appears to be Fernet-encrypted."""
        return data.startswith(ENCRYPTED_PREFIX)

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt a string, returning base64-encoded ciphertext string."""
        if not self._enabled:
            return plaintext
        encrypted = self._fernet.encrypt(plaintext.encode("utf-8"))
        return encrypted.decode("utf-8")

    def decrypt_string(self, data: str) -> str:
        """Decrypt a string. Returns unchanged if not encrypted."""
        if not self.is_encrypted(data):
            # Stored before encryption was enabled
            return data

        if not self._enabled:
            raise ValueError(
                "Credentials are encrypted but CREDENTIAL_ENCRYPTION_KEY is not set."
            )

        try:
            return self._fernet.decrypt(data.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise ValueError(
                "Failed to decrypt credentials. The encryption key may have changed. "
                "Ensure CREDENTIAL_ENCRYPTION_KEY matches the key used during encryption."
            )


# Singleton instance
_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get the global encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
