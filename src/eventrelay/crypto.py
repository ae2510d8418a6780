"""Encryption of webhook signing secrets at rest."""

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import SecretStr

from eventrelay.config import Settings

# 96 bits is the recommended nonce size for AES-GCM
NONCE_LENGTH = 12
TAG_LENGTH = 16


class EncryptionError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""

    pass


def derive_key(key_material: str) -> bytes:
    """Derive a 32-byte AES-256 key from arbitrary secret material."""
    return hashlib.sha256(key_material.encode()).digest()


class SecretVault:
    """AES-256-GCM encryption for per-subscription signing secrets.

    Ciphertexts are stored as ``nonce:tag:ciphertext`` in hex. Decryption
    fails closed: a wrong key or any tampering raises EncryptionError
    instead of returning altered plaintext.
    """

    def __init__(self, key_material: str | SecretStr | None):
        if isinstance(key_material, SecretStr):
            key_material = key_material.get_secret_value()
        if not key_material:
            raise EncryptionError("Webhook secret key is not configured")
        self._aesgcm = AESGCM(derive_key(key_material))

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretVault":
        """Build a vault from the configured webhook secret key."""
        return cls(settings.webhook_secret_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret for storage."""
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt a stored secret.

        Raises:
            EncryptionError: If the token is malformed, was produced with a
                different key, or has been modified.
        """
        parts = token.split(":") if token else []
        if len(parts) != 3:
            raise EncryptionError("Invalid encrypted secret format")

        try:
            nonce = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as e:
            raise EncryptionError("Invalid encrypted secret encoding") from e

        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise EncryptionError("Invalid encrypted secret format")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise EncryptionError("Secret failed authentication (wrong key or tampered)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncryptionError("Decrypted secret is not valid UTF-8") from e
