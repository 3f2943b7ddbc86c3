import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from conftest import (
    ACADEMY_SLACK_URL,
    NOW,
    SLACK_URL,
    calcom_payload,
    make_booking,
    make_workflow,
    register_keys,
)
from hubflow.engine import ExecutionEngine, redact
from hubflow.errors import PersistenceError
from hubflow.persistence import InMemoryRepository
from hubflow.security import CredentialCipher, CredentialVault, generate_encryption_key

CALCOM_STEPS = [
    "Parse Cal.com Payload",
    "Create/Update Attio Contact",
    "Create/Update Klaviyo Profile",
    "Store Booking",
    "Send Confirmation Email",
]


def _steps(result):
    return {s.name: s for s in result.step_logs}


@pytest.mark.asyncio
async def test_calcom_run_creates_contacts_booking_and_confirmation(repo, vault, engine, apis):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)

    result = await engine.execute(workflow, calcom_payload())

    assert result.status == "success"
    assert [s.name for s in result.step_logs] == CALCOM_STEPS
    assert all(s.status == "success" for s in result.step_logs)

    booking = await repo.get_booking_by_external_id("bk_1")
    assert booking is not None
    assert booking.email == "jane@example.com"
    assert booking.meeting_link == "https://meet.example.com/abc"
    assert booking.confirmation_sent_at is not None

    sent = json.loads(apis.calls("api.resend.com")[0].content)
    assert sent["to"] == "jane@example.com"
    assert "Discovery Call" in sent["html"]
    assert apis.calls("api.resend.com")[0].headers["Idempotency-Key"] == f"{booking.id}:confirmation"

    email_logs = await repo.list_email_logs(owner_id="owner_1")
    assert [(e.email_type, e.status) for e in email_logs] == [("confirmation", "sent")]

    log = await repo.get_execution_log(result.execution_id)
    assert log.status == "success"
    assert log.completed_at is not None
    assert "secret_key" not in json.dumps(log.model_dump(mode="json"))

    stored = await repo.get_workflow(workflow.id)
    assert stored.total_executions == 1
    assert stored.successful_executions == 1


@pytest.mark.asyncio
async def test_non_critical_failure_keeps_run_successful(repo, vault, engine, apis):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)
    apis.fail("api.resend.com", 422, {"message": "invalid from address"})

    result = await engine.execute(workflow, calcom_payload())

    steps = _steps(result)
    assert steps["Send Confirmation Email"].status == "failed"
    assert "422" in steps["Send Confirmation Email"].error
    assert result.status == "success"

    email_logs = await repo.list_email_logs(owner_id="owner_1")
    assert [e.status for e in email_logs] == ["failed"]
    stored = await repo.get_workflow(workflow.id)
    assert stored.successful_executions == 1


@pytest.mark.asyncio
async def test_critical_contact_failure_fails_run(repo, vault, engine, apis):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)
    apis.fail("api.attio.com", 400, {"message": "bad attribute"})

    result = await engine.execute(workflow, calcom_payload())

    steps = _steps(result)
    assert result.status == "failed"
    assert steps["Create/Update Attio Contact"].status == "failed"
    # later steps still run
    assert steps["Store Booking"].status == "success"

    log = await repo.get_execution_log(result.execution_id)
    assert "Create/Update Attio Contact" in log.error_message
    stored = await repo.get_workflow(workflow.id)
    assert stored.failed_executions == 1
    assert stored.successful_executions == 0


@pytest.mark.asyncio
async def test_missing_email_degrades_run(repo, vault, engine, apis):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)

    result = await engine.execute(workflow, calcom_payload(email=None))

    steps = _steps(result)
    assert steps["Parse Cal.com Payload"].status == "success"
    for name in CALCOM_STEPS[1:]:
        assert steps[name].status == "skipped"
        assert steps[name].error == "No email in payload"
    assert result.status == "degraded"
    assert apis.requests == []

    stored = await repo.get_workflow(workflow.id)
    assert stored.successful_executions == 1


@pytest.mark.asyncio
async def test_missing_credentials_skip_steps(repo, engine):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)

    result = await engine.execute(workflow, calcom_payload())

    steps = _steps(result)
    assert steps["Create/Update Attio Contact"].error == "No Attio API key configured"
    assert steps["Create/Update Klaviyo Profile"].error == "No Klaviyo API key configured"
    assert steps["Store Booking"].status == "success"
    assert steps["Send Confirmation Email"].error == "No Resend API key configured"
    assert result.status == "degraded"


@pytest.mark.asyncio
async def test_unusable_credential_is_skipped(repo, engine):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    other_vault = CredentialVault(repo, CredentialCipher(generate_encryption_key()))
    await other_vault.register("owner_1", "Attio", "attio", "attio_key")

    result = await engine.execute(workflow, calcom_payload())

    step = _steps(result)["Create/Update Attio Contact"]
    assert step.status == "skipped"
    assert step.error.startswith("Attio credential unusable")


@pytest.mark.asyncio
async def test_invalid_payload_fails_parse_and_skips_rest(repo, vault, engine):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)

    result = await engine.execute(workflow, {"hello": "world"})

    assert result.status == "failed"
    assert result.step_logs[0].name == "Parse Cal.com Payload"
    assert result.step_logs[0].status == "failed"
    assert all(
        s.status == "skipped" and s.error == "Payload could not be parsed"
        for s in result.step_logs[1:]
    )


@pytest.mark.asyncio
async def test_rescheduled_booking_with_known_uid_is_not_duplicated(repo, vault, engine):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)

    await engine.execute(workflow, calcom_payload())
    result = await engine.execute(workflow, calcom_payload(trigger="BOOKING_RESCHEDULED"))

    steps = _steps(result)
    assert steps["Store Booking"].output["created"] is False
    assert steps["Send Confirmation Email"].status == "skipped"
    assert len(await repo.list_bookings("owner_1")) == 1


@pytest.mark.asyncio
async def test_cancellation_marks_booking_cancelled(repo, vault, engine):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)
    await engine.execute(workflow, calcom_payload())

    result = await engine.execute(workflow, calcom_payload(trigger="BOOKING_CANCELLED"))

    steps = _steps(result)
    assert steps["Store Booking"].output["cancelled"] is True
    assert steps["Send Confirmation Email"].status == "skipped"
    booking = await repo.get_booking_by_external_id("bk_1")
    assert booking.status == "cancelled"


@pytest.mark.asyncio
async def test_step_timeout_fails_step(repo, vault, config):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    config.http.step_timeout = 0.05
    engine = ExecutionEngine(repo, vault, config, transport=httpx.MockTransport(slow))
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault, "owner_1", "attio")

    result = await engine.execute(workflow, calcom_payload())

    step = _steps(result)["Create/Update Attio Contact"]
    assert step.status == "failed"
    assert step.error == "Timed out after 0.05s"
    assert result.status == "failed"


@pytest.mark.asyncio
async def test_concurrent_runs_keep_counters_consistent(repo, vault, engine):
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)
    await register_keys(vault)

    results = await asyncio.gather(
        *(engine.execute(workflow, calcom_payload(uid=f"bk_{i}")) for i in range(10))
    )

    assert len({r.execution_id for r in results}) == 10
    logs = await repo.list_execution_logs(workflow.id)
    assert all(log.is_terminal for log in logs)
    stored = await repo.get_workflow(workflow.id)
    assert stored.total_executions == len(logs) == 10
    assert stored.successful_executions + stored.failed_executions == 10


class BrokenBookingRepository(InMemoryRepository):
    async def create_booking(self, booking):
        raise PersistenceError("disk full")


@pytest.mark.asyncio
async def test_persistence_error_closes_log_and_propagates(encryption_key, config, apis):
    repo = BrokenBookingRepository()
    vault = CredentialVault(repo, CredentialCipher(encryption_key))
    engine = ExecutionEngine(repo, vault, config, transport=apis.transport)
    workflow = make_workflow("calcom")
    await repo.create_workflow(workflow)

    with pytest.raises(PersistenceError):
        await engine.execute(workflow, calcom_payload())

    [log] = await repo.list_execution_logs(workflow.id)
    assert log.status == "failed"
    assert log.error_message == "disk full"
    assert "PersistenceError" in log.error_stack
    stored = await repo.get_workflow(workflow.id)
    assert stored.failed_executions == 1


@pytest.mark.asyncio
async def test_lead_form_run_notifies_slack(repo, vault, config, apis):
    config.slack.webhook_url = SLACK_URL
    config.klaviyo.lead_list_id = "list_1"
    engine = ExecutionEngine(repo, vault, config, transport=apis.transport)
    workflow = make_workflow("lead_form")
    await repo.create_workflow(workflow)
    await register_keys(vault, "owner_1", "klaviyo")

    result = await engine.execute(
        workflow, {"firstName": "Max", "lastName": "Muster", "email": "max@example.com"}
    )

    assert result.status == "success"
    assert [s.status for s in result.step_logs] == ["success"] * 4
    subscribe = apis.calls("a.klaviyo.com")[1]
    assert subscribe.url.path == "/api/profile-subscription-bulk-create-jobs/"
    texts = [json.loads(r.content)["text"] for r in apis.calls("hooks.slack.com")]
    assert "New lead: Max Muster (max@example.com)" in texts
    # run summary
    assert any(t.startswith("Success:") for t in texts)


@pytest.mark.asyncio
async def test_lead_form_without_list_or_slack_skips_optional_steps(repo, vault, engine):
    workflow = make_workflow("lead_form")
    await repo.create_workflow(workflow)
    await register_keys(vault, "owner_1", "klaviyo")

    result = await engine.execute(workflow, {"payload": {"data": {"email": "max@example.com"}}})

    steps = _steps(result)
    assert steps["Subscribe to Klaviyo List"].error == "No Klaviyo lead list configured"
    assert steps["Send Slack Notification"].error == "Slack webhook not configured"
    assert result.status == "success"


@pytest.mark.asyncio
async def test_attio_no_show_marks_latest_booking(repo, engine):
    workflow = make_workflow("attio")
    await repo.create_workflow(workflow)
    booking = make_booking(NOW)
    await repo.create_booking(booking)

    payload = {
        "event": {
            "event_type": "record.updated",
            "attribute": {"slug": "booking_status"},
            "new_value": [{"status": {"title": "No-Show"}}],
            "record": {"values": {"email_addresses": [{"email_address": "jane@example.com"}]}},
        }
    }
    result = await engine.execute(workflow, payload)

    assert _steps(result)["Mark Booking No-Show"].status == "success"
    assert (await repo.get_booking(booking.id)).status == "no_show"


@pytest.mark.asyncio
async def test_attio_no_show_only_touches_own_bookings(repo, engine):
    workflow = make_workflow("attio", owner_id="owner_1")
    await repo.create_workflow(workflow)
    own = make_booking(NOW, owner_id="owner_1")
    other = make_booking(
        NOW, owner_id="owner_2", created_at=own.created_at + timedelta(seconds=5)
    )
    await repo.create_booking(own)
    await repo.create_booking(other)

    result = await engine.execute(
        workflow, {"email": "jane@example.com", "status": "No-Show"}
    )

    assert _steps(result)["Mark Booking No-Show"].output == {"booking_id": own.id}
    assert (await repo.get_booking(own.id)).status == "no_show"
    assert (await repo.get_booking(other.id)).status == "confirmed"

    stranger = make_workflow("attio", owner_id="owner_3", webhook_path="attio-3")
    await repo.create_workflow(stranger)
    skipped = await engine.execute(
        stranger, {"email": "jane@example.com", "status": "No-Show"}
    )
    assert _steps(skipped)["Mark Booking No-Show"].status == "skipped"
    assert (await repo.get_booking(other.id)).status == "confirmed"


@pytest.mark.asyncio
async def test_attio_other_status_leaves_booking(repo, engine):
    workflow = make_workflow("attio")
    await repo.create_workflow(workflow)
    booking = make_booking(NOW)
    await repo.create_booking(booking)

    result = await engine.execute(
        workflow, {"email": "jane@example.com", "status": "Qualified"}
    )

    step = _steps(result)["Mark Booking No-Show"]
    assert step.status == "skipped"
    assert (await repo.get_booking(booking.id)).status == "confirmed"


@pytest.mark.asyncio
async def test_academy_notification_failure_does_not_fail_run(repo, vault, config, apis):
    config.slack.academy_webhook_url = ACADEMY_SLACK_URL
    apis.fail("hooks.slack.com", 500, {"message": "down"})
    engine = ExecutionEngine(repo, vault, config, transport=apis.transport)
    workflow = make_workflow("academy")
    await repo.create_workflow(workflow)

    result = await engine.execute(
        workflow, {"event": "course.enrolled", "user": {"name": "Ada"}, "course": "Python 101"}
    )

    step = _steps(result)["Send Academy Slack Notification"]
    assert step.status == "failed"
    assert result.status == "success"
    sent = json.loads(apis.calls("hooks.slack.com")[0].content)
    assert sent["text"] == ":books: Course enrollment: Ada -> Python 101"


def test_redact_masks_secret_keys():
    data = {"api_key": "abc", "nested": {"Authorization": "Bearer x", "email": "a@b.c"}, "items": [{"token": 1}]}
    assert redact(data) == {
        "api_key": "[redacted]",
        "nested": {"Authorization": "[redacted]", "email": "a@b.c"},
        "items": [{"token": "[redacted]"}],
    }
