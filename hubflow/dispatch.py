"""Webhook dispatch: resolve the workflow for a path and run it."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel

from .constants import DUPLICATE_WINDOW_SECONDS
from .engine import ExecutionEngine
from .errors import WorkflowDisabledError, WorkflowNotFoundError
from .models import ExecutionResult
from .payloads import event_uid
from .persistence.repository import Repository

logger = logging.getLogger(__name__)


class DispatchOutcome(BaseModel):
    workflow_id: str
    status: Literal["executed", "duplicate"]
    event_uid: Optional[str] = None
    result: Optional[ExecutionResult] = None


class DuplicateFilter:
    """Remembers event uids for ``window`` seconds within this process."""

    def __init__(
        self,
        window: float = DUPLICATE_WINDOW_SECONDS,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.max_entries = max_entries
        self._clock = clock
        self._seen: dict[str, float] = {}

    def seen_recently(self, key: str) -> bool:
        """Return ``True`` for a repeat inside the window, else record ``key``."""
        now = self._clock()
        last = self._seen.get(key)
        if last is not None and now - last < self.window:
            return True
        self._seen[key] = now
        if len(self._seen) > self.max_entries:
            self._prune(now)
        return False

    def _prune(self, now: float) -> None:
        self._seen = {k: t for k, t in self._seen.items() if now - t < self.window}


def delivery_key(workflow_id: str, payload: Any, uid: str) -> str:
    """Cal.com reuses the booking uid across trigger events, so the trigger is part of the key."""
    trigger = payload.get("triggerEvent") if isinstance(payload, dict) else None
    return f"{workflow_id}:{trigger or ''}:{uid}"


class WebhookDispatcher:
    """Entry point for inbound webhooks.

    Signature verification happens before this boundary.
    """

    def __init__(
        self,
        repository: Repository,
        engine: ExecutionEngine,
        duplicates: Optional[DuplicateFilter] = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.duplicates = duplicates or DuplicateFilter()

    async def dispatch(self, webhook_path: str, payload: Any) -> DispatchOutcome:
        workflow = await self.repository.get_workflow_by_webhook_path(webhook_path)
        if workflow is None:
            raise WorkflowNotFoundError(f"No workflow for webhook path {webhook_path}")
        if not workflow.is_enabled:
            raise WorkflowDisabledError(f"Workflow {workflow.name} is disabled")

        uid = event_uid(payload)
        if uid and self.duplicates.seen_recently(delivery_key(workflow.id, payload, uid)):
            logger.info(f"Ignoring duplicate delivery {uid} for workflow {workflow.id}")
            return DispatchOutcome(workflow_id=workflow.id, status="duplicate", event_uid=uid)

        result = await self.engine.execute(workflow, payload)
        return DispatchOutcome(
            workflow_id=workflow.id, status="executed", event_uid=uid, result=result
        )
