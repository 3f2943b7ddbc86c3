import json

import httpx
import pytest

import hubflow.utils.retry as retry
from hubflow.config import HttpConfig
from hubflow.errors import NotConfiguredError, NotificationError, ProviderError, TransientError
from hubflow.integrations import (
    AttioClient,
    KlaviyoClient,
    ResendClient,
    SlackNotifier,
    test_integration_connection,
)
from hubflow.integrations.attio import split_name


def _transport(handler):
    requests = []

    def record(request):
        requests.append(request)
        return handler(request)

    return httpx.MockTransport(record), requests


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch):
    monkeypatch.setattr(retry, "compute_backoff", lambda attempt, base=1.5, jitter=0.5: 0)


def test_missing_api_key_is_not_configured():
    with pytest.raises(NotConfiguredError, match="Attio API key"):
        AttioClient(None)


@pytest.mark.asyncio
async def test_attio_upsert_person_matches_on_email():
    transport, requests = _transport(
        lambda r: httpx.Response(200, json={"data": {"id": {"record_id": "rec_42"}}})
    )
    client = AttioClient("attio_key", transport=transport)

    record_id = await client.upsert_person("jane@example.com", name="Jane", phone="+49 1")

    assert record_id == "rec_42"
    request = requests[0]
    assert request.method == "PUT"
    assert request.url.path == "/v2/objects/people/records"
    assert request.url.params["matching_attribute"] == "email_addresses"
    assert request.headers["Authorization"] == "Bearer attio_key"
    values = json.loads(request.content)["data"]["values"]
    assert values["name"] == [{"full_name": "Jane", "first_name": "Jane", "last_name": "Jane"}]
    assert values["phone_numbers"] == [{"original_phone_number": "+49 1"}]


def test_split_name():
    assert split_name("Jane Mary Doe") == ("Jane", "Mary Doe")
    assert split_name("Cher") == ("Cher", "Cher")


@pytest.mark.asyncio
async def test_klaviyo_sends_revision_header():
    transport, requests = _transport(lambda r: httpx.Response(201, json={"data": {"id": "p1"}}))
    client = KlaviyoClient("pk_key", transport=transport, revision="2024-10-15")

    assert await client.upsert_profile("a@b.c", first_name="A", properties={"source": "x"}) == "p1"
    assert requests[0].headers["revision"] == "2024-10-15"
    assert requests[0].headers["Authorization"] == "Klaviyo-API-Key pk_key"
    attributes = json.loads(requests[0].content)["data"]["attributes"]
    assert attributes == {"email": "a@b.c", "first_name": "A", "properties": {"source": "x"}}


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    transport, requests = _transport(lambda r: httpx.Response(422, json={"message": "bad"}))
    client = ResendClient("re_key", http=HttpConfig(max_retries=3), transport=transport)

    with pytest.raises(ProviderError) as info:
        await client.send_email("a@b.c", "Hi", "<p>x</p>", "me@example.com")

    assert not isinstance(info.value, TransientError)
    assert info.value.status_code == 422
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    responses = iter(
        [
            httpx.Response(503, text="unavailable"),
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"id": "msg_9"}),
        ]
    )
    transport, requests = _transport(lambda r: next(responses))
    client = ResendClient("re_key", http=HttpConfig(max_retries=2), transport=transport)

    message_id = await client.send_email(
        "a@b.c", "Hi", "<p>x</p>", "me@example.com", idempotency_key="bk_1:24h"
    )

    assert message_id == "msg_9"
    assert len(requests) == 3
    assert {r.headers["Idempotency-Key"] for r in requests} == {"bk_1:24h"}


@pytest.mark.asyncio
async def test_send_without_idempotency_key_is_not_retried():
    def time_out(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    transport, requests = _transport(time_out)
    client = ResendClient("re_key", http=HttpConfig(max_retries=2), transport=transport)

    with pytest.raises(TransientError, match="timed out"):
        await client.send_email("a@b.c", "Hi", "<p>x</p>", "me@example.com")

    assert len(requests) == 1
    assert "Idempotency-Key" not in requests[0].headers


@pytest.mark.asyncio
async def test_network_failure_becomes_transient_after_retries():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = ResendClient("re_key", http=HttpConfig(max_retries=1), transport=httpx.MockTransport(refuse))

    with pytest.raises(TransientError, match="connection refused"):
        await client.send_email("a@b.c", "Hi", "<p>x</p>", "me@example.com", idempotency_key="k")


@pytest.mark.asyncio
async def test_resend_response_without_id():
    transport, _ = _transport(lambda r: httpx.Response(200, json={}))
    client = ResendClient("re_key", transport=transport)

    with pytest.raises(ProviderError, match="message id"):
        await client.send_email("a@b.c", "Hi", "<p>x</p>", "me@example.com")


@pytest.mark.asyncio
async def test_connection_tests_by_service():
    transport, requests = _transport(lambda r: httpx.Response(401, json={"message": "invalid key"}))

    failed = await test_integration_connection("klaviyo", "pk_bad", transport=transport)
    assert failed.ok is False
    assert "401" in failed.message
    assert requests[0].url.path == "/api/accounts/"

    calcom = await test_integration_connection("calcom", "whsec")
    assert calcom.ok is True
    unknown = await test_integration_connection("hubspot", "key")
    assert unknown.ok is False

    ok_transport, _ = _transport(lambda r: httpx.Response(200, json={"data": []}))
    assert (await test_integration_connection("attio", "k", transport=ok_transport)).ok is True


@pytest.mark.asyncio
async def test_slack_notify_is_best_effort():
    transport, requests = _transport(lambda r: httpx.Response(500, text="oops"))
    notifier = SlackNotifier("https://hooks.slack.com/services/x", transport=transport)

    assert await notifier.notify("hello", blocks=[{"type": "divider"}]) is False
    assert json.loads(requests[0].content) == {"text": "hello", "blocks": [{"type": "divider"}]}
    with pytest.raises(NotificationError):
        await notifier.post({"text": "hello"})

    unconfigured = SlackNotifier(None)
    assert unconfigured.configured is False
    assert await unconfigured.notify("hello") is False
