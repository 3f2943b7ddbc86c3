"""Workflow lifecycle: create, toggle, update and delete."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import HubflowConfig, load_config
from .errors import WorkflowNotFoundError
from .models import Workflow
from .persistence.repository import Repository
from .pipelines import get_pipeline
from .security.crypto import generate_webhook_path, generate_webhook_secret

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"name", "description", "trigger_config", "required_integrations", "is_enabled", "status"}
)


class WorkflowService:
    def __init__(self, repository: Repository, config: Optional[HubflowConfig] = None) -> None:
        self.repository = repository
        self.config = config or load_config()

    async def create(
        self,
        owner_id: str,
        name: str,
        provider: str,
        trigger_type: str = "webhook",
        description: Optional[str] = None,
        trigger_config: Optional[dict[str, Any]] = None,
        required_integrations: Optional[list[str]] = None,
    ) -> Workflow:
        """Create a disabled ``draft`` workflow.

        Webhook workflows get ``trigger_config["fixed_webhook_path"]`` as their
        path when given, otherwise a random one, plus a random secret.
        """
        pipeline = get_pipeline(provider)
        trigger_config = {**(trigger_config or {}), "provider": provider}
        if required_integrations is None:
            required_integrations = sorted(
                {spec.service for spec in pipeline.steps if spec.service}
            )

        webhook_path = webhook_secret = None
        if trigger_type == "webhook":
            webhook_path = trigger_config.get("fixed_webhook_path") or generate_webhook_path()
            webhook_secret = generate_webhook_secret()

        workflow = Workflow(
            owner_id=owner_id,
            name=name,
            description=description,
            trigger_type=trigger_type,
            trigger_config=trigger_config,
            webhook_path=webhook_path,
            webhook_secret=webhook_secret,
            required_integrations=required_integrations,
        )
        await self.repository.create_workflow(workflow)
        logger.info(f"Created {provider} workflow {workflow.id} ({name})")
        return workflow

    async def get(self, workflow_id: str, owner_id: Optional[str] = None) -> Workflow:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None or (owner_id is not None and workflow.owner_id != owner_id):
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def list_workflows(self, owner_id: Optional[str] = None) -> list[Workflow]:
        return await self.repository.list_workflows(owner_id)

    async def update(
        self, workflow_id: str, changes: dict[str, Any], owner_id: Optional[str] = None
    ) -> Workflow:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields can not be updated: {sorted(unknown)}")
        await self.get(workflow_id, owner_id)
        updated = await self.repository.update_workflow(workflow_id, changes)
        if updated is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return updated

    async def toggle(self, workflow_id: str, owner_id: Optional[str] = None) -> Workflow:
        """Flip ``is_enabled``; enabled workflows are ``active``, disabled ``paused``."""
        workflow = await self.get(workflow_id, owner_id)
        enabled = not workflow.is_enabled
        logger.info(f"Workflow {workflow_id} {'enabled' if enabled else 'paused'}")
        return await self.update(
            workflow_id,
            {"is_enabled": enabled, "status": "active" if enabled else "paused"},
            owner_id,
        )

    async def delete(self, workflow_id: str, owner_id: Optional[str] = None) -> bool:
        await self.get(workflow_id, owner_id)
        return await self.repository.delete_workflow(workflow_id)

    def webhook_url(self, webhook_path: str) -> str:
        return f"{self.config.app_url.rstrip('/')}/api/webhooks/{webhook_path}"
