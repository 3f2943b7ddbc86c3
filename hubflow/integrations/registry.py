"""Service metadata and client construction by service id."""

from __future__ import annotations

from typing import Optional

import httpx

from ..config import HubflowConfig
from ..constants import SERVICE_ATTIO, SERVICE_CALCOM, SERVICE_KLAVIYO, SERVICE_RESEND
from ..models import ConnectionTestResult
from .attio import AttioClient
from .base import IntegrationClient
from .klaviyo import KlaviyoClient
from .resend import ResendClient

SERVICE_METADATA = {
    SERVICE_ATTIO: {
        "name": "Attio CRM",
        "description": "CRM for modern teams",
        "docs_url": "https://developers.attio.com",
        "placeholder": "attio_...",
    },
    SERVICE_KLAVIYO: {
        "name": "Klaviyo",
        "description": "Email and SMS marketing",
        "docs_url": "https://developers.klaviyo.com",
        "placeholder": "pk_...",
    },
    SERVICE_CALCOM: {
        "name": "Cal.com",
        "description": "Scheduling infrastructure",
        "docs_url": "https://cal.com/docs/api",
        "placeholder": "cal_live_...",
    },
    SERVICE_RESEND: {
        "name": "Resend",
        "description": "Email API for developers",
        "docs_url": "https://resend.com/docs",
        "placeholder": "re_...",
    },
}


def create_client(
    service: str,
    api_key: str,
    config: Optional[HubflowConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[IntegrationClient]:
    """Return an API client for ``service`` or ``None`` if it has no client."""
    config = config or HubflowConfig()
    if service == SERVICE_ATTIO:
        return AttioClient(api_key, http=config.http, transport=transport)
    if service == SERVICE_KLAVIYO:
        return KlaviyoClient(
            api_key, http=config.http, transport=transport, revision=config.klaviyo.revision
        )
    if service == SERVICE_RESEND:
        return ResendClient(api_key, http=config.http, transport=transport)
    return None


async def test_integration_connection(
    service: str,
    api_key: str,
    config: Optional[HubflowConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectionTestResult:
    if service == SERVICE_CALCOM:
        # Cal.com pushes webhooks to us; the stored value is the signing secret
        return ConnectionTestResult(
            ok=True, message="Cal.com webhook secret stored. Configure the webhook in Cal.com."
        )
    if service not in SERVICE_METADATA:
        return ConnectionTestResult(ok=False, message=f"Unknown service: {service}")
    client = create_client(service, api_key, config, transport)
    return await client.test_connection()


# keep pytest from collecting the helper when imported into test modules
test_integration_connection.__test__ = False  # type: ignore[attr-defined]
