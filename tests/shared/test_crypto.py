"""Tests for provider credential encryption."""

from __future__ import annotations

import pytest

from agent_relay.shared.crypto import CredentialCipher
from agent_relay.shared.crypto import DecryptionError
from agent_relay.shared.crypto import IV_SIZE
from agent_relay.shared.crypto import TAG_SIZE


class TestCredentialCipher:
    """Test AES-256-GCM encryption of API keys."""

    def test_encrypt_then_decrypt_returns_plaintext(self, cipher):
        """Test a secret survives encryption."""
        secret = cipher.encrypt("sk-test-123")

        assert cipher.decrypt(secret.ciphertext, secret.iv, secret.auth_tag) == "sk-test-123"

    def test_empty_string_round_trips(self, cipher):
        """Test an empty secret encrypts to an empty ciphertext and back."""
        secret = cipher.encrypt("")

        assert secret.ciphertext == ""
        assert cipher.decrypt(secret.ciphertext, secret.iv, secret.auth_tag) == ""

    def test_multibyte_utf8_round_trips(self, cipher):
        """Test non-ASCII secrets survive encryption."""
        plaintext = "héllo ✓ 日本語 🎉"
        secret = cipher.encrypt(plaintext)

        assert cipher.decrypt(secret.ciphertext, secret.iv, secret.auth_tag) == plaintext

    def test_different_iv_is_rejected(self, cipher):
        """Test decryption with another IV fails authentication."""
        secret = cipher.encrypt("sk-test-123")
        other_iv = "11" * IV_SIZE if secret.iv != "11" * IV_SIZE else "22" * IV_SIZE

        with pytest.raises(DecryptionError):
            cipher.decrypt(secret.ciphertext, other_iv, secret.auth_tag)

    def test_encrypted_parts_are_hex(self, cipher):
        """Test the stored columns are hex with the expected sizes."""
        secret = cipher.encrypt("sk-test-123")

        assert len(bytes.fromhex(secret.iv)) == IV_SIZE
        assert len(bytes.fromhex(secret.auth_tag)) == TAG_SIZE
        assert secret.ciphertext != "sk-test-123"

    def test_fresh_iv_per_encryption(self, cipher):
        """Test the same secret encrypts differently each time."""
        first = cipher.encrypt("same")
        second = cipher.encrypt("same")

        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_tampered_tag_is_rejected(self, cipher):
        """Test authentication failure raises DecryptionError."""
        secret = cipher.encrypt("sk-test-123")
        bad_tag = ("0" if secret.auth_tag[0] != "0" else "1") + secret.auth_tag[1:]

        with pytest.raises(DecryptionError):
            cipher.decrypt(secret.ciphertext, secret.iv, bad_tag)

    def test_wrong_key_is_rejected(self, cipher):
        """Test a different key cannot read the secret."""
        secret = cipher.encrypt("sk-test-123")
        other = CredentialCipher(b"\x01" * 32)

        with pytest.raises(DecryptionError):
            other.decrypt(secret.ciphertext, secret.iv, secret.auth_tag)

    def test_malformed_hex_is_rejected(self, cipher):
        """Test non-hex input raises DecryptionError."""
        with pytest.raises(DecryptionError):
            cipher.decrypt("not-hex", "00" * IV_SIZE, "00" * TAG_SIZE)

    def test_key_must_be_32_bytes(self):
        """Test short keys are refused."""
        with pytest.raises(ValueError):
            CredentialCipher(b"short")

        with pytest.raises(ValueError):
            CredentialCipher.from_hex("zz" * 32)
