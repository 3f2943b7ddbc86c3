from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest

import hubflow.persistence as persistence
from hubflow.config import HttpConfig, HubflowConfig
from hubflow.engine import ExecutionEngine
from hubflow.models import Booking, Workflow
from hubflow.persistence import InMemoryRepository
from hubflow.security import CredentialCipher, CredentialVault, generate_encryption_key

NOW = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"
ACADEMY_SLACK_URL = "https://hooks.slack.com/services/T000/B000/ACAD"

HUBFLOW_ENV = (
    "HUBFLOW_CONFIG",
    "HUBFLOW_DATABASE_URL",
    "DATABASE_URL",
    "HUBFLOW_ENCRYPTION_KEY",
    "HUBFLOW_APP_URL",
    "HUBFLOW_LOG_LEVEL",
    "SLACK_WEBHOOK_URL",
    "ACADEMY_SLACK_WEBHOOK_URL",
    "KLAVIYO_LEAD_LIST_ID",
    "HUBFLOW_REMINDER_SENDER",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REFRESH_TOKEN",
)


class FakeApis:
    """Answers third-party API calls by host and records every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, tuple[int, Any]] = {
            "api.attio.com": (200, {"data": {"id": {"record_id": "rec_1"}}}),
            "a.klaviyo.com": (201, {"data": {"id": "prof_1"}}),
            "api.resend.com": (200, {"id": "msg_1"}),
            "hooks.slack.com": (200, "ok"),
        }

    def fail(self, host: str, status: int = 400, body: Any = None) -> None:
        self.responses[host] = (status, body or {"message": "rejected"})

    def succeed(self, host: str, body: Any) -> None:
        self.responses[host] = (200, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.get(request.url.host, (404, {"message": "unknown host"}))
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]


@pytest.fixture(autouse=True)
def _isolate(monkeypatch, tmp_path):
    for name in HUBFLOW_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HUBFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def encryption_key() -> str:
    return generate_encryption_key()


@pytest.fixture
def config(encryption_key) -> HubflowConfig:
    return HubflowConfig(
        encryption_key=encryption_key,
        http=HttpConfig(timeout=5.0, max_retries=0, step_timeout=5.0),
    )


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def vault(repo, encryption_key) -> CredentialVault:
    return CredentialVault(repo, CredentialCipher(encryption_key))


@pytest.fixture
def apis() -> FakeApis:
    return FakeApis()


@pytest.fixture
def engine(repo, vault, config, apis) -> ExecutionEngine:
    return ExecutionEngine(repo, vault, config, transport=apis.transport)


def make_workflow(kind: str, owner_id: str = "owner_1", enabled: bool = True, **kwargs) -> Workflow:
    return Workflow(
        owner_id=owner_id,
        name=f"{kind} workflow",
        trigger_config=kwargs.pop("trigger_config", {"provider": kind}),
        webhook_path=kwargs.pop("webhook_path", f"{kind}-hook"),
        webhook_secret="secret",
        is_enabled=enabled,
        status="active" if enabled else "paused",
        **kwargs,
    )


def make_booking(
    start_time: datetime, owner_id: str = "owner_1", email: str = "jane@example.com", **kwargs
) -> Booking:
    return Booking(
        owner_id=owner_id,
        email=email,
        first_name="Jane",
        last_name="Doe",
        start_time=start_time,
        end_time=start_time + timedelta(minutes=30),
        meeting_link="https://meet.example.com/abc",
        event_type="Discovery Call",
        **kwargs,
    )


def calcom_payload(
    email: Optional[str] = "jane@example.com",
    uid: str = "bk_1",
    trigger: str = "BOOKING_CREATED",
    start: datetime = NOW + timedelta(days=3),
) -> dict[str, Any]:
    attendee: dict[str, Any] = {"name": "Jane Doe", "phoneNumber": "+4915100000"}
    if email is not None:
        attendee["email"] = email
    return {
        "triggerEvent": trigger,
        "payload": {
            "uid": uid,
            "title": "Discovery Call",
            "startTime": start.isoformat(),
            "endTime": (start + timedelta(minutes=30)).isoformat(),
            "attendees": [attendee],
            "metadata": {"videoCallUrl": "https://meet.example.com/abc"},
            "location": "integrations:google:meet",
        },
    }


async def register_keys(vault: CredentialVault, owner_id: str = "owner_1", *services: str) -> None:
    for service in services or ("attio", "klaviyo", "resend"):
        await vault.register(owner_id, service.title(), service, f"{service}_secret_key_123")
