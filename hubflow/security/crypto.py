"""AES-256-GCM encryption for credentials stored at rest."""

from __future__ import annotations

import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import BaseModel

from ..config import HubflowConfig
from ..constants import AUTH_TAG_LENGTH, IV_LENGTH, KEY_HINT_LENGTH, KEY_HINT_MASK
from ..errors import ConfigurationError, DecryptionError


class EncryptedData(BaseModel):
    """Hex ciphertext with the GCM tag appended, plus the hex IV."""

    cipher_text: str
    iv: str


class CredentialCipher:
    """Encrypts and decrypts strings with a 256-bit key.

    The authentication tag is appended to the ciphertext and is always the
    last ``AUTH_TAG_LENGTH`` bytes, so it can be split off without metadata.
    """

    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ConfigurationError("Encryption key must be hex encoded") from exc
        if len(key) != 32:
            raise ConfigurationError(
                f"Encryption key must be 32 bytes (64 hex chars), got {len(key)} bytes"
            )
        self._key = key

    @classmethod
    def from_config(cls, config: Optional[HubflowConfig] = None) -> "CredentialCipher":
        key_hex = (config.encryption_key if config else None) or os.getenv(
            "HUBFLOW_ENCRYPTION_KEY"
        )
        if not key_hex:
            raise ConfigurationError("HUBFLOW_ENCRYPTION_KEY is not set")
        return cls(key_hex)

    def encrypt(self, plaintext: str) -> EncryptedData:
        iv = os.urandom(IV_LENGTH)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv)).encryptor()
        body = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        return EncryptedData(
            cipher_text=(body + encryptor.tag).hex(),
            iv=iv.hex(),
        )

    def decrypt(self, cipher_text: str, iv_hex: str) -> str:
        """Return the plaintext or raise ``DecryptionError``."""
        try:
            raw = bytes.fromhex(cipher_text)
            iv = bytes.fromhex(iv_hex)
        except ValueError as exc:
            raise DecryptionError("Encrypted value is not valid hex") from exc
        if len(raw) < AUTH_TAG_LENGTH:
            raise DecryptionError("Encrypted value is shorter than the auth tag")
        if not iv:
            raise DecryptionError("Missing initialization vector")

        body, tag = raw[:-AUTH_TAG_LENGTH], raw[-AUTH_TAG_LENGTH:]
        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.GCM(iv, tag)).decryptor()
            data = decryptor.update(body) + decryptor.finalize()
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError(
                "Authentication tag did not verify (key rotated or data corrupted)"
            ) from exc
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8") from exc


def get_key_hint(value: str, length: int = KEY_HINT_LENGTH) -> str:
    """Masked display form of a secret. Short values are fully masked."""
    if len(value) <= length:
        return "*" * len(value)
    return KEY_HINT_MASK + value[-length:]


def generate_encryption_key() -> str:
    return secrets.token_hex(32)


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


def generate_webhook_path() -> str:
    return secrets.token_hex(16)
