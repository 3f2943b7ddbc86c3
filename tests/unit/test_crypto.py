import pytest

from hubflow.config import HubflowConfig
from hubflow.errors import ConfigurationError, DecryptionError
from hubflow.security import (
    CredentialCipher,
    generate_encryption_key,
    generate_webhook_path,
    generate_webhook_secret,
    get_key_hint,
)


@pytest.fixture
def cipher(encryption_key):
    return CredentialCipher(encryption_key)


@pytest.mark.parametrize("plaintext", ["sk_live_abcdef", "", "schlüssel 🔑 ключ"])
def test_encrypt_decrypt_roundtrip(cipher, plaintext):
    encrypted = cipher.encrypt(plaintext)
    assert cipher.decrypt(encrypted.cipher_text, encrypted.iv) == plaintext


def test_each_encryption_uses_fresh_iv(cipher):
    first = cipher.encrypt("same")
    second = cipher.encrypt("same")
    assert first.iv != second.iv
    assert first.cipher_text != second.cipher_text
    assert len(bytes.fromhex(first.iv)) == 16
    # 4 bytes of data plus the 16 byte tag
    assert len(bytes.fromhex(first.cipher_text)) == 20


def test_tampered_ciphertext_is_rejected(cipher):
    encrypted = cipher.encrypt("secret")
    raw = bytearray(bytes.fromhex(encrypted.cipher_text))
    raw[0] ^= 0x01
    with pytest.raises(DecryptionError):
        cipher.decrypt(raw.hex(), encrypted.iv)


def test_wrong_iv_or_key_is_rejected(cipher):
    encrypted = cipher.encrypt("secret")
    with pytest.raises(DecryptionError):
        cipher.decrypt(encrypted.cipher_text, "00" * 16)
    other = CredentialCipher(generate_encryption_key())
    with pytest.raises(DecryptionError):
        other.decrypt(encrypted.cipher_text, encrypted.iv)


@pytest.mark.parametrize(
    "cipher_text, iv",
    [("zz", "00" * 16), ("00" * 8, "00" * 16), ("00" * 32, "")],
)
def test_malformed_values_are_rejected(cipher, cipher_text, iv):
    with pytest.raises(DecryptionError):
        cipher.decrypt(cipher_text, iv)


@pytest.mark.parametrize("key", ["not-hex", "ab" * 16])
def test_invalid_key_is_a_configuration_error(key):
    with pytest.raises(ConfigurationError):
        CredentialCipher(key)


def test_from_config_prefers_config_then_env(monkeypatch, encryption_key):
    with pytest.raises(ConfigurationError):
        CredentialCipher.from_config(HubflowConfig())

    monkeypatch.setenv("HUBFLOW_ENCRYPTION_KEY", encryption_key)
    cipher = CredentialCipher.from_config(HubflowConfig())
    encrypted = cipher.encrypt("x")
    assert CredentialCipher(encryption_key).decrypt(encrypted.cipher_text, encrypted.iv) == "x"


def test_key_hint():
    assert get_key_hint("ab") == "**"
    assert get_key_hint("abcd") == "****"
    assert get_key_hint("abcdef1234") == "********1234"


def test_generated_secrets_are_hex():
    assert len(bytes.fromhex(generate_webhook_secret())) == 32
    assert len(bytes.fromhex(generate_webhook_path())) == 16
    assert len(bytes.fromhex(generate_encryption_key())) == 32
