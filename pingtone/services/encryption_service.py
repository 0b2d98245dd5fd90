"""Encryption service for securing stored UCM credentials."""

import sys
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from pingtone.config import settings

__all__ = ["EncryptionService", "InvalidToken"]


class EncryptionService:
    """Service for encrypting and decrypting cluster and node passwords."""

    def __init__(self, key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            key: Fernet key to use (defaults to settings.encryption_key).
        """
        self._key = key or settings.encryption_key
        self._validate_encryption_key()
        self._fernet = Fernet(self._key.encode())

    def _validate_encryption_key(self) -> None:
        """Stop the process when the configured Fernet key is unusable.

        Raises:
            SystemExit: If encryption key is missing or invalid.
        """
        hint = "Generate a key with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        if not self._key:
            print("ERROR: ENCRYPTION_KEY environment variable is not set.", file=sys.stderr)
            print("Stored UCM credentials cannot be read without a valid encryption key.", file=sys.stderr)
            print(hint, file=sys.stderr)
            sys.exit(1)

        try:
            Fernet(self._key.encode())
        except (ValueError, TypeError) as e:
            print(f"ERROR: Invalid ENCRYPTION_KEY format: {e}", file=sys.stderr)
            print(hint, file=sys.stderr)
            sys.exit(1)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a UCM password for storage in a *_encrypted column."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Recover a stored UCM password.

        Raises:
            InvalidToken: If the ciphertext is invalid or was encrypted with another key.
        """
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a value that may be absent (optional SSH or per-node credentials)."""
        if not plaintext:
            return None
        return self.encrypt(plaintext)

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        return self.decrypt(ciphertext)
