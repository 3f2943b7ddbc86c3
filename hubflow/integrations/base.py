"""Shared HTTP plumbing for third-party integration clients."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import HttpConfig
from ..constants import SERVICE_LABELS
from ..errors import NotConfiguredError, ProviderError, TransientError
from ..models import ConnectionTestResult
from ..utils.retry import retry_transient

logger = logging.getLogger(__name__)


class IntegrationClient:
    """Base class for API-key authenticated JSON clients.

    Subclasses set ``service`` and ``base_url`` and implement ``_headers``.
    Every request maps transport failures, timeouts, 429 and 5xx responses to
    ``TransientError`` (retried with backoff) and other 4xx responses to
    ``ProviderError``.
    """

    service: str = ""
    base_url: str = ""

    def __init__(
        self,
        api_key: Optional[str],
        http: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise NotConfiguredError(f"{self.label} API key is not configured")
        self._api_key = api_key
        self._http = http or HttpConfig()
        self._transport = transport

    @property
    def label(self) -> str:
        return SERVICE_LABELS.get(self.service, self.service)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=httpx.Timeout(self._http.timeout),
            transport=self._transport,
        )

    async def _send_once(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                raise TransientError(
                    self.service, f"{self.label} request timed out: {method} {path}"
                ) from exc
            except httpx.TransportError as exc:
                raise TransientError(
                    self.service, f"{self.label} request failed: {exc}"
                ) from exc
        check_response(self.service, self.label, response)
        return response

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await retry_transient(
            lambda: self._send_once(method, path, **kwargs),
            max_retries=self._http.max_retries,
            base=self._http.backoff_base,
            description=f"{self.label} {method} {path}",
        )

    async def _probe(self, method: str, path: str, ok_message: str) -> ConnectionTestResult:
        try:
            await self._send_once(method, path)
        except ProviderError as exc:
            logger.info(f"{self.label} connection test failed: {exc}")
            return ConnectionTestResult(ok=False, message=str(exc))
        return ConnectionTestResult(ok=True, message=ok_message)


def check_response(service: str, label: str, response: httpx.Response) -> None:
    """Raise the matching ``ProviderError`` for a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    body = response.text
    message = f"{label} API error {status}: {body[:200]}"
    if status == 429 or status >= 500:
        raise TransientError(service, message, status_code=status, body=body)
    raise ProviderError(service, message, status_code=status, body=body)
