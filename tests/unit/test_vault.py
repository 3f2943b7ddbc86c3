import pytest

from hubflow.errors import DecryptionError, MissingCredentialError
from hubflow.models import ConnectionTestResult
from hubflow.security import CredentialCipher, CredentialVault, generate_encryption_key


@pytest.mark.asyncio
async def test_register_stores_only_ciphertext(repo, vault):
    credential = await vault.register("owner_1", "Attio prod", "attio", "attio_live_9876")

    stored = await repo.get_credential(credential.id, "owner_1")
    assert stored.key_hint == "********9876"
    assert "attio_live_9876" not in stored.model_dump_json()
    assert await vault.reveal(credential.id, "owner_1") == "attio_live_9876"


@pytest.mark.asyncio
async def test_credentials_are_scoped_by_owner(vault):
    credential = await vault.register("owner_1", "Resend", "resend", "re_123456")

    assert await vault.get(credential.id, "owner_2") is None
    assert await vault.reveal(credential.id, "owner_2") is None
    assert await vault.list_for_owner("owner_2") == []
    with pytest.raises(MissingCredentialError):
        await vault.reveal_for_service("owner_2", "resend")
    assert await vault.reveal_for_service("owner_1", "resend") == "re_123456"


@pytest.mark.asyncio
async def test_rotated_encryption_key_raises_decryption_error(repo, vault):
    await vault.register("owner_1", "Klaviyo", "klaviyo", "pk_abcdef")
    rotated = CredentialVault(repo, CredentialCipher(generate_encryption_key()))

    with pytest.raises(DecryptionError):
        await rotated.reveal_for_service("owner_1", "klaviyo")


@pytest.mark.asyncio
async def test_rotate_replaces_key_and_hint(vault):
    credential = await vault.register("owner_1", "Attio", "attio", "old_key_1111")

    updated = await vault.rotate(credential.id, "owner_1", name="Attio new", api_key="new_key_2222")

    assert updated.name == "Attio new"
    assert updated.key_hint == "********2222"
    assert await vault.reveal(credential.id, "owner_1") == "new_key_2222"


@pytest.mark.asyncio
async def test_test_connection_records_outcome(repo, encryption_key):
    calls = []

    async def tester(service, api_key):
        calls.append((service, api_key))
        return ConnectionTestResult(ok=False, message="Invalid API key")

    vault = CredentialVault(repo, CredentialCipher(encryption_key), tester=tester)
    credential = await vault.register("owner_1", "Attio", "attio", "attio_key_0000")

    result = await vault.test_connection(credential.id, "owner_1")

    assert result.ok is False
    assert calls == [("attio", "attio_key_0000")]
    stored = await vault.get(credential.id, "owner_1")
    assert stored.is_valid is False
    assert stored.last_tested_at is not None
    assert await vault.test_connection("missing", "owner_1") is None


@pytest.mark.asyncio
async def test_delete(vault):
    credential = await vault.register("owner_1", "Attio", "attio", "attio_key_0000")
    assert await vault.delete(credential.id, "owner_2") is False
    assert await vault.delete(credential.id, "owner_1") is True
    assert await vault.list_for_owner("owner_1") == []
