"""Gmail sender using an OAuth refresh token."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from email.message import EmailMessage
from typing import Awaitable, Callable, Optional

import httpx

from ..config import GmailConfig, HttpConfig
from ..errors import NotConfiguredError, ProviderError, TransientError
from ..utils.retry import retry_transient
from .base import check_response

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this many seconds before the provider's expiry
TOKEN_REFRESH_MARGIN = 60.0


class AccessTokenCache:
    """Holds one OAuth access token and refreshes it at most once at a time.

    Concurrent callers that find the token stale wait on the same lock; the
    first one refreshes and the rest reuse the new token.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[tuple[str, float]]],
        clock: Callable[[], float] = time.monotonic,
        margin: float = TOKEN_REFRESH_MARGIN,
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self._margin = margin
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at - self._margin

    async def get(self) -> str:
        if self._valid():
            return self._token  # type: ignore[return-value]
        async with self._lock:
            if not self._valid():
                token, expires_in = await self._fetch()
                self._token = token
                self._expires_at = self._clock() + expires_in
                logger.debug(f"Refreshed Gmail access token, valid for {expires_in:.0f}s")
            return self._token  # type: ignore[return-value]

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class GmailClient:
    """Sends from one shared Gmail account.

    Used for reminders when ``email.reminder_sender`` is ``gmail``.
    """

    service = "gmail"
    label = "Gmail"

    def __init__(
        self,
        config: GmailConfig,
        http: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not (config.client_id and config.client_secret and config.refresh_token):
            raise NotConfiguredError(
                "Gmail OAuth not configured: client id, client secret and refresh token are required"
            )
        self._config = config
        self._http = http or HttpConfig()
        self._transport = transport
        self.tokens = AccessTokenCache(self._refresh_access_token, clock=clock)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._http.timeout), transport=self._transport
        )

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        async with self._client() as client:
            try:
                response = await client.post(url, **kwargs)
            except httpx.TimeoutException as exc:
                raise TransientError(self.service, f"Gmail request timed out: {url}") from exc
            except httpx.TransportError as exc:
                raise TransientError(self.service, f"Gmail request failed: {exc}") from exc
        check_response(self.service, self.label, response)
        return response

    async def _refresh_access_token(self) -> tuple[str, float]:
        response = await retry_transient(
            lambda: self._post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "refresh_token": self._config.refresh_token,
                    "grant_type": "refresh_token",
                },
            ),
            max_retries=self._http.max_retries,
            base=self._http.backoff_base,
            description="Gmail token refresh",
        )
        data = response.json()
        return data["access_token"], float(data.get("expires_in", 3600))

    def build_message(self, to: str, subject: str, html: str, sender: Optional[str] = None) -> str:
        """Return the base64url encoded MIME message Gmail expects in ``raw``."""
        message = EmailMessage()
        message["From"] = sender or self._config.sender or ""
        message["To"] = to
        message["Subject"] = subject
        message.set_content(html, subtype="html", charset="utf-8")
        return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        sender: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Post one message. Only the token refresh is retried.

        Gmail has no idempotency header, so ``idempotency_key`` is accepted for
        parity with ``ResendClient`` and a failed send is never repeated here.
        """
        raw = self.build_message(to, subject, html, sender)
        token = await self.tokens.get()
        try:
            response = await self._post(
                f"{GMAIL_API_BASE}/users/me/messages/send",
                json={"raw": raw},
                headers={"Authorization": f"Bearer {token}"},
            )
        except ProviderError as exc:
            if exc.status_code == 401:
                self.tokens.invalidate()
            raise
        return response.json()["id"]
