"""Resend transactional email client."""

from __future__ import annotations

from typing import Optional

from ..constants import SERVICE_RESEND
from ..errors import ProviderError
from ..models import ConnectionTestResult
from .base import IntegrationClient


class ResendClient(IntegrationClient):
    service = SERVICE_RESEND
    base_url = "https://api.resend.com"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def test_connection(self) -> ConnectionTestResult:
        return await self._probe("GET", "/domains", "Connection successful")

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        sender: str,
        text: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Send one email and return the provider message id.

        With an ``idempotency_key`` transient failures are retried and Resend
        drops repeats of an accepted message. Without one the message is
        posted exactly once.
        """
        payload = {"from": sender, "to": to, "subject": subject, "html": html}
        if text:
            payload["text"] = text
        if idempotency_key is None:
            response = await self._send_once("POST", "/emails", json=payload)
        else:
            response = await self.request(
                "POST", "/emails", json=payload, headers={"Idempotency-Key": idempotency_key}
            )
        message_id = response.json().get("id")
        if not message_id:
            raise ProviderError(
                self.service, "Resend response did not contain a message id", body=response.text
            )
        return message_id
