"""Credential Vault: encrypted API keys scoped by owner and service."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from ..errors import DecryptionError, MissingCredentialError
from ..models import ConnectionTestResult, Credential, utcnow
from ..persistence.repository import Repository
from .crypto import CredentialCipher, get_key_hint

logger = logging.getLogger(__name__)

ConnectionTester = Callable[[str, str], Awaitable[ConnectionTestResult]]


class CredentialVault:
    """Stores credentials encrypted and hands out plaintext on request.

    Only the ``reveal*`` methods return plaintext; everything else returns
    ``Credential`` records carrying ciphertext and a masked hint.
    """

    def __init__(
        self,
        repository: Repository,
        cipher: CredentialCipher,
        tester: Optional[ConnectionTester] = None,
    ) -> None:
        self.repository = repository
        self.cipher = cipher
        self._tester = tester

    async def register(
        self, owner_id: str, name: str, service: str, api_key: str
    ) -> Credential:
        encrypted = self.cipher.encrypt(api_key)
        credential = Credential(
            owner_id=owner_id,
            name=name,
            service=service,
            encrypted_key=encrypted.cipher_text,
            iv=encrypted.iv,
            key_hint=get_key_hint(api_key),
        )
        await self.repository.create_credential(credential)
        logger.info(f"Stored {service} credential {credential.id} for owner {owner_id}")
        return credential

    async def list_for_owner(self, owner_id: str) -> list[Credential]:
        return await self.repository.list_credentials(owner_id)

    async def get(self, credential_id: str, owner_id: str) -> Credential | None:
        return await self.repository.get_credential(credential_id, owner_id)

    async def get_by_service(self, owner_id: str, service: str) -> Credential | None:
        return await self.repository.get_credential_by_service(owner_id, service)

    def _decrypt(self, credential: Credential) -> str:
        try:
            return self.cipher.decrypt(credential.encrypted_key, credential.iv)
        except DecryptionError:
            logger.warning(
                f"Credential {credential.id} ({credential.service}) could not be decrypted"
            )
            raise

    async def reveal(self, credential_id: str, owner_id: str) -> Optional[str]:
        """Plaintext of one credential, ``None`` if it does not exist."""
        credential = await self.get(credential_id, owner_id)
        if credential is None:
            return None
        return self._decrypt(credential)

    async def reveal_for_service(self, owner_id: str, service: str) -> str:
        """Plaintext key for ``service``.

        Raises ``MissingCredentialError`` when none is stored and
        ``DecryptionError`` when the stored value is unusable.
        """
        credential = await self.get_by_service(owner_id, service)
        if credential is None:
            raise MissingCredentialError(owner_id, service)
        return self._decrypt(credential)

    async def rotate(
        self,
        credential_id: str,
        owner_id: str,
        name: Optional[str] = None,
        api_key: Optional[str] = None,
        is_valid: Optional[bool] = None,
    ) -> Credential | None:
        changes: dict = {}
        if name:
            changes["name"] = name
        if api_key:
            encrypted = self.cipher.encrypt(api_key)
            changes.update(
                encrypted_key=encrypted.cipher_text,
                iv=encrypted.iv,
                key_hint=get_key_hint(api_key),
            )
        if is_valid is not None:
            changes["is_valid"] = is_valid
        return await self.repository.update_credential(credential_id, owner_id, changes)

    async def delete(self, credential_id: str, owner_id: str) -> bool:
        return await self.repository.delete_credential(credential_id, owner_id)

    async def test_connection(
        self, credential_id: str, owner_id: str
    ) -> ConnectionTestResult | None:
        """Probe the service with the stored key and record the outcome."""
        credential = await self.get(credential_id, owner_id)
        if credential is None:
            return None
        try:
            api_key = self._decrypt(credential)
        except DecryptionError as exc:
            result = ConnectionTestResult(ok=False, message=str(exc))
        else:
            result = await self._test(credential.service, api_key)
        await self.repository.update_credential(
            credential_id,
            owner_id,
            {"is_valid": result.ok, "last_tested_at": utcnow()},
        )
        return result

    async def _test(self, service: str, api_key: str) -> ConnectionTestResult:
        if self._tester is not None:
            return await self._tester(service, api_key)
        from ..integrations.registry import test_integration_connection

        return await test_integration_connection(service, api_key)
