"""Tests for CredentialVault."""

from __future__ import annotations

import pytest

from src.integrations.errors import ConfigurationError, CredentialVaultError
from src.integrations.vault import CredentialVault


class TestCredentialVault:
    def test_ciphertext_is_not_plaintext(self, vault: CredentialVault) -> None:
        ciphertext = vault.encrypt("refresh-secret")
        assert "refresh-secret" not in ciphertext
        assert vault.decrypt(ciphertext) == "refresh-secret"

    def test_optional_values(self, vault: CredentialVault) -> None:
        assert vault.encrypt_optional(None) is None
        assert vault.decrypt_optional(None) is None
        assert vault.decrypt_optional(vault.encrypt_optional("x")) == "x"

    def test_wrong_key_fails(self, vault: CredentialVault) -> None:
        other = CredentialVault([CredentialVault.generate_key()])
        with pytest.raises(CredentialVaultError):
            other.decrypt(vault.encrypt("secret"))

    def test_garbage_fails(self, vault: CredentialVault) -> None:
        with pytest.raises(CredentialVaultError):
            vault.decrypt("not-a-token")

    def test_rotation(self) -> None:
        old_key, new_key = CredentialVault.generate_key(), CredentialVault.generate_key()
        old = CredentialVault([old_key])
        ciphertext = old.encrypt("secret")

        rotating = CredentialVault.from_key_string(f"{new_key},{old_key}")
        assert rotating.decrypt(ciphertext) == "secret"
        rotated = rotating.rotate(ciphertext)

        assert CredentialVault([new_key]).decrypt(rotated) == "secret"
        with pytest.raises(CredentialVaultError):
            old.decrypt(rotated)

    def test_passphrase_key(self) -> None:
        first = CredentialVault(["correct horse battery staple"])
        second = CredentialVault.from_key_string(" correct horse battery staple ")
        assert second.decrypt(first.encrypt("secret")) == "secret"

    @pytest.mark.parametrize("keys", [[], [""], ["  "]])
    def test_no_key_is_a_configuration_error(self, keys: list[str]) -> None:
        with pytest.raises(ConfigurationError):
            CredentialVault(keys)
