"""Execution engine running a workflow's fixed step sequence for one event."""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from typing import Any, Optional

import httpx

from .config import HubflowConfig, load_config
from .constants import CRITICAL_CATEGORIES, NO_EMAIL_REASON, SERVICE_LABELS
from .errors import (
    ConfigurationError,
    DecryptionError,
    MissingCredentialError,
    PayloadParseError,
    PersistenceError,
)
from .integrations.slack import SlackNotifier, format_execution_log
from .models import ExecutionLog, ExecutionResult, StepLog, Workflow, utcnow
from .payloads import NormalizedEvent, parse_payload
from .persistence.repository import Repository
from .pipelines import Pipeline, SkipStep, StepContext, StepSpec, get_pipeline
from .security.vault import CredentialVault

logger = logging.getLogger(__name__)

SECRET_MARKERS = ("key", "token", "secret", "password", "authorization")
REDACTED = "[redacted]"


def redact(value: Any) -> Any:
    """Mask values stored under secret-looking keys, recursively."""
    if isinstance(value, dict):
        return {
            k: REDACTED
            if any(marker in str(k).lower() for marker in SECRET_MARKERS)
            else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def decide_status(pipeline: Pipeline, step_logs: list[StepLog]) -> str:
    """Terminal status of a run from its step logs.

    A failed parse step or a failed critical step fails the run. A critical
    step that was skipped (missing credential, missing email) degrades it.
    """
    categories = {spec.name: spec.category for spec in pipeline.steps}
    statuses = [(categories.get(s.name), s.status) for s in step_logs]
    if step_logs and step_logs[0].name == pipeline.parse_step and step_logs[0].status == "failed":
        return "failed"
    if any(cat in CRITICAL_CATEGORIES and status == "failed" for cat, status in statuses):
        return "failed"
    if any(cat in CRITICAL_CATEGORIES and status == "skipped" for cat, status in statuses):
        return "degraded"
    return "success"


class ExecutionEngine:
    """Runs a workflow against one inbound payload and records the outcome."""

    def __init__(
        self,
        repository: Repository,
        vault: CredentialVault,
        config: Optional[HubflowConfig] = None,
        notifier: Optional[SlackNotifier] = None,
        academy_notifier: Optional[SlackNotifier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.repository = repository
        self.vault = vault
        self.config = config or load_config()
        self.transport = transport
        self.notifier = notifier or SlackNotifier(
            self.config.slack.webhook_url, http=self.config.http, transport=transport
        )
        self.academy_notifier = academy_notifier or SlackNotifier(
            self.config.slack.academy_webhook_url, http=self.config.http, transport=transport
        )

    async def execute(
        self, workflow: Workflow, payload: dict[str, Any], trigger_type: str = "webhook"
    ) -> ExecutionResult:
        started = time.monotonic()
        log = ExecutionLog(
            workflow_id=workflow.id,
            trigger_type=trigger_type,
            input_payload=payload if isinstance(payload, dict) else {"value": payload},
        )
        await self.repository.create_execution_log(log)
        await self.repository.update_execution_log(log.id, {"status": "running"})
        logger.info(f"Execution {log.id} started for workflow {workflow.name} ({workflow.id})")

        step_logs: list[StepLog] = []
        outputs: dict[str, Any] = {}
        try:
            pipeline = get_pipeline(workflow.kind)
            event = await self._parse(pipeline, payload, step_logs)
            if event is None:
                for spec in pipeline.steps:
                    step_logs.append(
                        StepLog(name=spec.name, status="skipped", error="Payload could not be parsed")
                    )
            else:
                ctx = StepContext(
                    workflow=workflow,
                    event=event,
                    config=self.config,
                    repository=self.repository,
                    outputs=outputs,
                    transport=self.transport,
                    notifier=self.notifier,
                    academy_notifier=self.academy_notifier,
                )
                for spec in pipeline.steps:
                    step_logs.append(await self._run_step(spec, ctx))
            status = decide_status(pipeline, step_logs)
        except Exception as exc:
            await self._close_failed(workflow, log, step_logs, exc, started)
            raise

        duration_ms = _elapsed_ms(started)
        final = {
            "status": status,
            "output_payload": redact(
                {
                    "event": event.model_dump(mode="json") if event else None,
                    "steps": outputs,
                }
            ),
            "step_logs": step_logs,
            "completed_at": utcnow(),
            "duration_ms": duration_ms,
        }
        if status == "failed":
            final["error_message"] = "; ".join(
                f"{s.name}: {s.error}" for s in step_logs if s.status == "failed"
            )
        await self.repository.update_execution_log(log.id, final)
        await self.repository.increment_execution_stats(
            workflow.id, status != "failed", utcnow()
        )
        logger.info(
            f"Execution {log.id} finished with status {status} in {duration_ms}ms"
        )

        await self._notify(workflow, log.model_copy(update=final))
        return ExecutionResult(
            execution_id=log.id,
            workflow_id=workflow.id,
            status=status,
            step_logs=step_logs,
            output=outputs,
            duration_ms=duration_ms,
        )

    async def _parse(
        self, pipeline: Pipeline, payload: dict[str, Any], step_logs: list[StepLog]
    ) -> Optional[NormalizedEvent]:
        started = time.monotonic()
        try:
            event = parse_payload(pipeline.kind, payload)
        except PayloadParseError as exc:
            logger.warning(f"{pipeline.parse_step} failed: {exc}")
            step_logs.append(
                StepLog(
                    name=pipeline.parse_step,
                    status="failed",
                    error=str(exc),
                    duration_ms=_elapsed_ms(started),
                )
            )
            return None
        step_logs.append(
            StepLog(
                name=pipeline.parse_step,
                status="success",
                input=redact(payload),
                output=event.model_dump(mode="json"),
                duration_ms=_elapsed_ms(started),
            )
        )
        return event

    async def _run_step(self, spec: StepSpec, ctx: StepContext) -> StepLog:
        started = time.monotonic()
        contact = ctx.event.contact

        def finish(status: str, error: Optional[str] = None, output: Any = None) -> StepLog:
            return StepLog(
                name=spec.name,
                status=status,
                input=redact({"email": contact.email, "name": contact.name})
                if spec.needs_email
                else None,
                output=redact(output),
                error=error,
                duration_ms=_elapsed_ms(started),
            )

        if spec.needs_email and not contact.email:
            return finish("skipped", NO_EMAIL_REASON)
        if spec.requires_output is not None:
            step, key = spec.requires_output
            if ctx.output_of(step, key) is None:
                return finish("skipped", f"Requires {key} from {step}")

        ctx.api_key = None
        if spec.service is not None:
            label = SERVICE_LABELS.get(spec.service, spec.service)
            try:
                ctx.api_key = await self.vault.reveal_for_service(
                    ctx.workflow.owner_id, spec.service
                )
            except MissingCredentialError:
                return finish("skipped", f"No {label} API key configured")
            except DecryptionError as exc:
                return finish("skipped", f"{label} credential unusable: {exc}")

        timeout = self.config.http.step_timeout
        try:
            output = await asyncio.wait_for(spec.handler(ctx), timeout=timeout)
        except PersistenceError:
            raise
        except (SkipStep, ConfigurationError) as exc:
            logger.info(f"Step {spec.name} skipped: {exc}")
            return finish("skipped", str(exc))
        except asyncio.TimeoutError:
            logger.warning(f"Step {spec.name} timed out after {timeout}s")
            return finish("failed", f"Timed out after {timeout}s")
        except Exception as exc:
            logger.warning(f"Step {spec.name} failed: {exc}")
            return finish("failed", str(exc) or type(exc).__name__)
        finally:
            ctx.api_key = None

        ctx.outputs[spec.name] = output
        return finish("success", output=output)

    async def _close_failed(
        self,
        workflow: Workflow,
        log: ExecutionLog,
        step_logs: list[StepLog],
        exc: BaseException,
        started: float,
    ) -> None:
        logger.error(f"Execution {log.id} aborted: {exc}")
        try:
            await self.repository.update_execution_log(
                log.id,
                {
                    "status": "failed",
                    "error_message": str(exc) or type(exc).__name__,
                    "error_stack": "".join(
                        traceback.format_exception(type(exc), exc, exc.__traceback__)
                    ),
                    "step_logs": step_logs,
                    "completed_at": utcnow(),
                    "duration_ms": _elapsed_ms(started),
                },
            )
            await self.repository.increment_execution_stats(workflow.id, False, utcnow())
        except PersistenceError as close_exc:
            logger.error(f"Could not close execution log {log.id}: {close_exc}")

    async def _notify(self, workflow: Workflow, log: ExecutionLog) -> None:
        if not self.notifier.configured:
            return
        message = format_execution_log(workflow.name, log)
        await self.notifier.notify(message["text"], message["blocks"])
