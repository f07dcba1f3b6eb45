"""AES-256-GCM encryption for provider API keys.

Provider keys are stored as three hex strings (ciphertext, IV and
authentication tag) so a row can be decrypted without any framing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


class DecryptionError(Exception):
    """Raised when a secret cannot be decrypted or fails authentication."""


@dataclass(frozen=True)
class EncryptedSecret:
    """Hex-encoded AES-GCM output."""

    ciphertext: str
    iv: str
    auth_tag: str


class CredentialCipher:
    """Encrypts and decrypts short secrets with a fixed 32-byte key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> CredentialCipher:
        """Build a cipher from a 64 character hex key."""
        try:
            key = bytes.fromhex(hex_key)
        except ValueError as e:
            raise ValueError("Encryption key must be hex encoded") from e
        return cls(key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """Encrypt a UTF-8 string with a fresh random IV."""
        iv = os.urandom(IV_SIZE)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return EncryptedSecret(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            auth_tag=tag.hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str) -> str:
        """Decrypt hex-encoded ciphertext.

        Raises:
            DecryptionError: If the inputs are malformed, the tag does not
                verify, or the plaintext is not valid UTF-8
        """
        try:
            iv_bytes = bytes.fromhex(iv)
            sealed = bytes.fromhex(ciphertext) + bytes.fromhex(auth_tag)
        except ValueError as e:
            raise DecryptionError(f"Malformed encrypted secret: {e}") from e

        if len(iv_bytes) != IV_SIZE:
            raise DecryptionError(f"IV must be {IV_SIZE} bytes, got {len(iv_bytes)}")

        try:
            plaintext = self._aesgcm.decrypt(iv_bytes, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag verification failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted secret is not valid UTF-8") from e
