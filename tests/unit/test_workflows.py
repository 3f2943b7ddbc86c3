import pytest

from hubflow.errors import WorkflowNotFoundError
from hubflow.workflows import WorkflowService


@pytest.fixture
def service(repo, config):
    config.app_url = "https://hub.example.com/"
    return WorkflowService(repo, config)


@pytest.mark.asyncio
async def test_create_starts_disabled_draft_with_generated_path(service):
    workflow = await service.create("owner_1", "Bookings", "calcom")

    assert workflow.status == "draft"
    assert workflow.is_enabled is False
    assert workflow.kind == "calcom"
    assert len(workflow.webhook_path) == 32
    assert len(workflow.webhook_secret) == 64
    assert workflow.required_integrations == ["attio", "klaviyo", "resend"]
    assert service.webhook_url(workflow.webhook_path) == (
        f"https://hub.example.com/api/webhooks/{workflow.webhook_path}"
    )


@pytest.mark.asyncio
async def test_create_with_fixed_path_and_unknown_provider(service):
    workflow = await service.create(
        "owner_1", "Academy", "academy", trigger_config={"fixed_webhook_path": "academy"}
    )
    assert workflow.webhook_path == "academy"
    assert workflow.required_integrations == []

    with pytest.raises(ValueError):
        await service.create("owner_1", "Nope", "hubspot")


@pytest.mark.asyncio
async def test_toggle_and_update(service):
    workflow = await service.create("owner_1", "Leads", "lead_form")

    enabled = await service.toggle(workflow.id)
    assert (enabled.is_enabled, enabled.status) == (True, "active")
    paused = await service.toggle(workflow.id)
    assert (paused.is_enabled, paused.status) == (False, "paused")

    renamed = await service.update(workflow.id, {"name": "Website leads"})
    assert renamed.name == "Website leads"
    with pytest.raises(ValueError):
        await service.update(workflow.id, {"total_executions": 99})


@pytest.mark.asyncio
async def test_owner_scoping_and_delete(service):
    workflow = await service.create("owner_1", "Leads", "lead_form")

    with pytest.raises(WorkflowNotFoundError):
        await service.get(workflow.id, owner_id="owner_2")
    with pytest.raises(WorkflowNotFoundError):
        await service.delete(workflow.id, owner_id="owner_2")

    assert await service.delete(workflow.id, owner_id="owner_1") is True
    assert await service.list_workflows("owner_1") == []
