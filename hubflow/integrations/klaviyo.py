"""Klaviyo marketing client."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from ..config import HttpConfig
from ..constants import SERVICE_KLAVIYO
from ..errors import ProviderError
from ..models import ConnectionTestResult
from .base import IntegrationClient


class KlaviyoClient(IntegrationClient):
    service = SERVICE_KLAVIYO
    base_url = "https://a.klaviyo.com/api"

    def __init__(
        self,
        api_key: Optional[str],
        http: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        revision: str = "2024-02-15",
    ) -> None:
        super().__init__(api_key, http=http, transport=transport)
        self.revision = revision

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Klaviyo-API-Key {self._api_key}",
            "Content-Type": "application/json",
            "revision": self.revision,
        }

    async def test_connection(self) -> ConnectionTestResult:
        return await self._probe("GET", "/accounts/", "Connection successful")

    async def upsert_profile(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        properties: Optional[dict[str, Any]] = None,
    ) -> str:
        """Create or update a profile. Returns the profile id."""
        attributes: dict[str, Any] = {"email": email}
        if first_name:
            attributes["first_name"] = first_name
        if last_name:
            attributes["last_name"] = last_name
        if phone:
            attributes["phone_number"] = phone
        if properties:
            attributes["properties"] = properties

        response = await self.request(
            "POST",
            "/profiles/",
            json={"data": {"type": "profile", "attributes": attributes}},
        )
        body = response.json()
        try:
            return body["data"]["id"]
        except (KeyError, TypeError) as exc:
            raise ProviderError(
                self.service, "Klaviyo response did not contain a profile id", body=response.text
            ) from exc

    async def subscribe_to_list(
        self,
        list_id: str,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> None:
        attributes: dict[str, Any] = {"email": email}
        if first_name:
            attributes["first_name"] = first_name
        if last_name:
            attributes["last_name"] = last_name
        await self.request(
            "POST",
            "/profile-subscription-bulk-create-jobs/",
            json={
                "data": {
                    "type": "profile-subscription-bulk-create-job",
                    "attributes": {
                        "profiles": {"data": [{"type": "profile", "attributes": attributes}]}
                    },
                    "relationships": {"list": {"data": {"type": "list", "id": list_id}}},
                }
            },
        )
