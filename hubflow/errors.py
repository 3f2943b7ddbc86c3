"""Error taxonomy used across the engine, scheduler and integrations."""

from __future__ import annotations

from typing import Optional


class HubflowError(Exception):
    """Base class for all hubflow errors."""


class ConfigurationError(HubflowError):
    """Something required to run a step is not configured.

    Always results in a ``skipped`` step, never aborts a run.
    """


class NotConfiguredError(ConfigurationError):
    """An integration client is missing a setting or credential."""


class MissingCredentialError(ConfigurationError):
    """No credential is stored for an owner and service."""

    def __init__(self, owner_id: str, service: str) -> None:
        super().__init__(f"No {service} credential for owner {owner_id}")
        self.owner_id = owner_id
        self.service = service


class DecryptionError(ConfigurationError):
    """A stored credential can not be decrypted (rotated key, corrupted data)."""


class ProviderError(HubflowError):
    """A third-party API rejected a request."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.body = body


class TransientError(ProviderError):
    """Network failure, timeout, rate limit or 5xx from a provider."""


class PersistenceError(HubflowError):
    """The store could not write or read a record.

    Fatal: the audit guarantee depends on durable logging.
    """


class NotificationError(HubflowError):
    """A best-effort downstream notification failed."""


class PayloadParseError(HubflowError):
    """An inbound payload does not match the provider's shape."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class WorkflowNotFoundError(HubflowError):
    """No workflow is registered for a webhook path or id."""


class WorkflowDisabledError(HubflowError):
    """The workflow exists but is not enabled."""
