"""Fernet symmetric encryption for storage credentials and signing keys.

This module provides encryption and decryption of backend access keys and
URL signing keys using Fernet symmetric encryption from the cryptography
library.

The FERNET_KEY environment variable must be set with a valid Fernet key
generated via `Fernet.generate_key()` or the `scripts/generate_fernet_key.py`
CLI tool.

Usage:
    from recipestream.utils.encryption import get_encryption_service

    service = get_encryption_service()
    encrypted = service.encrypt("AKIA...")
    decrypted = service.decrypt(encrypted, backend="s3-eu")

Security Notes:
    - NEVER log or expose encrypted values or plaintext secrets
    - Key rotation requires re-encrypting every StorageBackend row
"""

import os
from typing import ClassVar

from cryptography.fernet import Fernet, InvalidToken


class EncryptionKeyMissing(Exception):
    """Raised when FERNET_KEY environment variable is not set or malformed."""

    pass


class DecryptionError(Exception):
    """Raised when decryption fails due to invalid key or corrupted data.

    Attributes:
        backend: Name of the storage backend whose secret failed to decrypt
            (if available). Useful for debugging without exposing secrets.
    """

    def __init__(self, message: str, backend: str | None = None) -> None:
        self.backend = backend
        super().__init__(message)

    def __str__(self) -> str:
        if self.backend:
            return f"{super().__str__()} (backend={self.backend})"
        return super().__str__()


class EncryptionService:
    """Fernet symmetric encryption service for credential storage.

    Singleton with lazy initialization so FERNET_KEY is read only once.

    Raises:
        EncryptionKeyMissing: If FERNET_KEY environment variable is not set.
    """

    _instance: ClassVar["EncryptionService | None"] = None
    _cipher: Fernet

    def __new__(cls) -> "EncryptionService":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self) -> None:
        key = os.environ.get("FERNET_KEY")
        if not key:
            raise EncryptionKeyMissing(
                "FERNET_KEY environment variable is required. "
                "Generate a key using: python scripts/generate_fernet_key.py"
            )
        try:
            self._cipher = Fernet(key.encode())
        except ValueError as e:
            raise EncryptionKeyMissing(
                "Invalid FERNET_KEY format: Fernet key must be 32 url-safe "
                "base64-encoded bytes. Generate a valid key using: "
                "python scripts/generate_fernet_key.py"
            ) from e

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt plaintext string to bytes suitable for a LargeBinary column."""
        return self._cipher.encrypt(plaintext.encode())

    def decrypt(self, ciphertext: bytes, backend: str | None = None) -> str:
        """Decrypt ciphertext bytes to plaintext string.

        Args:
            ciphertext: The encrypted bytes from database storage.
            backend: Optional backend name for error context.

        Raises:
            DecryptionError: If decryption fails (invalid key or corrupted data).
        """
        try:
            return self._cipher.decrypt(ciphertext).decode()
        except InvalidToken as e:
            raise DecryptionError(
                "Decryption failed: invalid encryption key or corrupted data",
                backend=backend,
            ) from e
        except (TypeError, ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(
                f"Decryption failed: {type(e).__name__}",
                backend=backend,
            ) from e

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (for testing only)."""
        cls._instance = None


def get_encryption_service() -> EncryptionService:
    """Get the singleton EncryptionService instance.

    Raises:
        EncryptionKeyMissing: If FERNET_KEY environment variable is not set.
    """
    return EncryptionService()
