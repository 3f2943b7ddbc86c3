"""Credential encryption and the vault built on it."""

from .crypto import (
    CredentialCipher,
    EncryptedData,
    generate_encryption_key,
    generate_webhook_path,
    generate_webhook_secret,
    get_key_hint,
)
from .vault import CredentialVault

__all__ = [
    "CredentialCipher",
    "CredentialVault",
    "EncryptedData",
    "generate_encryption_key",
    "generate_webhook_path",
    "generate_webhook_secret",
    "get_key_hint",
]
