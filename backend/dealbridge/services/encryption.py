"""Fernet encryption for OAuth tokens stored in the credential table."""

from cryptography.fernet import Fernet, InvalidToken

from dealbridge.core.config import settings
from dealbridge.core.errors import EncryptionError


class EncryptionService:
    """Encrypts and decrypts token strings with a Fernet key.

    The key is a URL-safe base64-encoded 32-byte value, generated with
    ``Fernet.generate_key()``.
    """

    def __init__(self, encryption_key: str | None = None):
        """Initialize with a key, falling back to ``settings.encryption_key``.

        Raises:
            EncryptionError: If no key is configured or the key is malformed.
        """
        key = encryption_key or settings.encryption_key

        if not key:
            raise EncryptionError(
                "Encryption key not configured. Set the ENCRYPTION_KEY "
                "environment variable to a Fernet key."
            )

        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Invalid encryption key: {e}")

    def encrypt(self, token: str) -> str:
        """Encrypt a token for storage."""
        if not token:
            raise EncryptionError("Refusing to store an empty token")
        return self._fernet.encrypt(token.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored token.

        Raises:
            EncryptionError: If the ciphertext was produced with another key
                or has been tampered with.
        """
        if not ciphertext:
            raise EncryptionError("Stored token is empty")

        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise EncryptionError(
                "Stored token could not be decrypted. It was written with a "
                "different ENCRYPTION_KEY or is corrupted."
            )


_encryption_service: EncryptionService | None = None


def get_encryption_service() -> EncryptionService:
    """Return the process-wide EncryptionService, creating it on first use."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
