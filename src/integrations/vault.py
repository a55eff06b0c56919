"""At-rest encryption for OAuth tokens.

Tokens are Fernet-encrypted before they reach the store.  Several keys may be
configured (comma-separated in ``TOKEN_ENCRYPTION_KEY``): the first encrypts,
all of them decrypt, which lets an operator rotate keys without downtime.
"""

from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from src.integrations.errors import ConfigurationError, CredentialVaultError

logger = logging.getLogger("healthsync.integrations.vault")


def _fernet_for(key: str) -> Fernet:
    """Build a Fernet from a proper Fernet key or, failing that, a passphrase.

    Passphrases are stretched to 32 bytes with SHA-256.
    """
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError:
        key32 = hashlib.sha256(key.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(key32))


class CredentialVault:
    """Symmetric encrypt/decrypt of secret strings with key rotation."""

    def __init__(self, keys: list[str]) -> None:
        keys = [k.strip() for k in keys if k and k.strip()]
        if not keys:
            raise ConfigurationError("No token encryption key configured")
        self._fernet = MultiFernet([_fernet_for(k) for k in keys])

    @classmethod
    def from_key_string(cls, value: str) -> "CredentialVault":
        """Build a vault from a comma-separated key list, newest key first."""
        return cls(value.split(","))

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored credential.

        Raises:
            CredentialVaultError: If no configured key can decrypt the value.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialVaultError("Stored credential could not be decrypted") from exc

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt_optional(self, ciphertext: str | None) -> str | None:
        return self.decrypt(ciphertext) if ciphertext else None

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a value under the primary key.

        Raises:
            CredentialVaultError: If no configured key can decrypt the value.
        """
        try:
            return self._fernet.rotate(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialVaultError("Stored credential could not be rotated") from exc
