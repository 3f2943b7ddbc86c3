"""Attio CRM client."""

from __future__ import annotations

from typing import Any, Optional

from ..constants import SERVICE_ATTIO
from ..errors import ProviderError
from ..models import ConnectionTestResult
from .base import IntegrationClient


def split_name(full_name: str) -> tuple[str, str]:
    """Attio wants first and last name; single words fill both."""
    name = full_name.strip()
    parts = name.split(" ")
    first = parts[0] or name
    last = " ".join(parts[1:]) or name
    return first, last


class AttioClient(IntegrationClient):
    service = SERVICE_ATTIO
    base_url = "https://api.attio.com/v2"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def test_connection(self) -> ConnectionTestResult:
        return await self._probe("GET", "/objects", "Connection successful")

    async def upsert_person(
        self,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        attributes: Optional[dict[str, Any]] = None,
    ) -> str:
        """Create or update a person matched by email. Returns the record id."""
        values: dict[str, Any] = {"email_addresses": [{"email_address": email}]}
        if name and name.strip():
            first, last = split_name(name)
            values["name"] = [
                {"full_name": name.strip(), "first_name": first, "last_name": last}
            ]
        if phone:
            values["phone_numbers"] = [{"original_phone_number": phone}]
        for key, value in (attributes or {}).items():
            if value is not None:
                values[key] = value

        response = await self.request(
            "PUT",
            "/objects/people/records",
            params={"matching_attribute": "email_addresses"},
            json={"data": {"values": values}},
        )
        body = response.json()
        try:
            return body["data"]["id"]["record_id"]
        except (KeyError, TypeError) as exc:
            raise ProviderError(
                self.service, "Attio response did not contain a record id", body=response.text
            ) from exc
