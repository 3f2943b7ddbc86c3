"""Command line interface for hubflow."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer

from .config import HubflowConfig, load_config
from .dispatch import WebhookDispatcher
from .engine import ExecutionEngine
from .errors import ConfigurationError, HubflowError
from .persistence import get_repository
from .scheduler import ReminderScheduler
from .security.crypto import CredentialCipher, generate_encryption_key
from .security.vault import CredentialVault
from .workflows import WorkflowService

app = typer.Typer(help="CLI for hubflow integrations")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
logs_app = typer.Typer(help="Commands for inspecting execution logs")
reminders_app = typer.Typer(help="Commands for booking reminders")
credentials_app = typer.Typer(help="Commands for managing stored API keys")

app.add_typer(workflow_app, name="workflow")
app.add_typer(logs_app, name="logs")
app.add_typer(reminders_app, name="reminders")
app.add_typer(credentials_app, name="credentials")


@app.callback()
def main() -> None:
    """Hubflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _vault(config: HubflowConfig) -> CredentialVault:
    try:
        cipher = CredentialCipher.from_config(config)
    except ConfigurationError as exc:
        _fail(str(exc))
    return CredentialVault(get_repository(), cipher)


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("list")
def workflow_list(owner: Optional[str] = typer.Option(None, help="Only this owner's workflows")) -> None:
    """
    List workflows with their status and counters.

    Example:
        hubflow workflow list --owner user_1
    """
    service = WorkflowService(get_repository(), load_config())
    workflows = asyncio.run(service.list_workflows(owner))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        enabled = "enabled" if wf.is_enabled else "disabled"
        typer.echo(
            f"{wf.id}\t{wf.name}\t{wf.kind}\t{wf.status}\t{enabled}\t"
            f"{wf.successful_executions}/{wf.total_executions}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show one workflow, including its webhook URL."""
    config = load_config()
    service = WorkflowService(get_repository(), config)
    try:
        wf = asyncio.run(service.get(workflow_id))
    except HubflowError as exc:
        _fail(str(exc))

    typer.echo(f"Workflow {wf.id}: {wf.name}")
    typer.echo(f"Kind: {wf.kind}  Status: {wf.status}  Enabled: {wf.is_enabled}")
    if wf.webhook_path:
        typer.echo(f"Webhook: {service.webhook_url(wf.webhook_path)}")
    typer.echo(f"Integrations: {', '.join(wf.required_integrations) or '-'}")
    typer.echo(
        f"Executions: {wf.total_executions} total, "
        f"{wf.successful_executions} successful, {wf.failed_executions} failed"
    )
    if wf.last_executed_at:
        typer.echo(f"Last executed: {wf.last_executed_at.isoformat()}")


@workflow_app.command("create")
def workflow_create(
    name: str,
    provider: str = typer.Option(..., help="calcom, lead_form, attio or academy"),
    owner: str = typer.Option(..., help="Owner id"),
    path: Optional[str] = typer.Option(None, help="Fixed webhook path"),
    description: Optional[str] = None,
) -> None:
    """Create a disabled workflow and print its webhook URL."""
    config = load_config()
    service = WorkflowService(get_repository(), config)
    trigger_config = {"fixed_webhook_path": path} if path else {}
    try:
        wf = asyncio.run(
            service.create(
                owner,
                name,
                provider,
                description=description,
                trigger_config=trigger_config,
            )
        )
    except (HubflowError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(f"Created workflow {wf.id}")
    typer.echo(f"Webhook: {service.webhook_url(wf.webhook_path)}")
    typer.echo(f"Secret: {wf.webhook_secret}")


@workflow_app.command("toggle")
def workflow_toggle(workflow_id: str) -> None:
    """Enable a disabled workflow or pause an enabled one."""
    service = WorkflowService(get_repository(), load_config())
    try:
        wf = asyncio.run(service.toggle(workflow_id))
    except HubflowError as exc:
        _fail(str(exc))
    typer.echo(f"Workflow {wf.id} is now {wf.status}")


# ----------------------------------------------------------------------
# logs


@logs_app.command("list")
def logs_list(
    workflow: Optional[str] = typer.Option(None, help="Only logs of this workflow"),
    limit: int = 20,
) -> None:
    """List recent execution logs, newest first."""
    repo = get_repository()
    logs = asyncio.run(repo.list_execution_logs(workflow, limit=limit))
    if not logs:
        typer.echo("No execution logs found")
        return
    for log in logs:
        typer.echo(
            f"{log.id}\t{log.workflow_id}\t{log.status}\t"
            f"{log.started_at.isoformat()}\t{log.duration_ms or 0}ms"
        )


@logs_app.command("show")
def logs_show(log_id: str) -> None:
    """
    Show an execution log with its step-by-step history.

    Example:
        hubflow logs show 5f1c...
        # Output: Execution 5f1c...: degraded (412ms)
        #         - Parse Cal.com Payload: success
        #         - Create/Update Attio Contact: skipped (No email in payload)
    """
    repo = get_repository()
    log = asyncio.run(repo.get_execution_log(log_id))
    if log is None:
        _fail("Execution log not found")

    typer.echo(f"Execution {log.id}: {log.status} ({log.duration_ms or 0}ms)")
    typer.echo(f"Workflow: {log.workflow_id}  Trigger: {log.trigger_type}")
    if log.error_message:
        typer.echo(f"Error: {log.error_message}")
    for step in log.step_logs:
        line = f"- {step.name}: {step.status}"
        if step.error:
            line += f" ({step.error})"
        typer.echo(line)


# ----------------------------------------------------------------------
# run / reminders


@app.command("run")
def run_webhook(webhook_path: str, payload_file: Path) -> None:
    """Dispatch a JSON payload from a file as if it arrived on ``webhook_path``."""
    if not payload_file.exists():
        _fail(f"Payload file not found: {payload_file}")
    try:
        payload = json.loads(payload_file.read_text())
    except json.JSONDecodeError as exc:
        _fail(f"Payload is not valid JSON: {exc}")

    config = load_config()
    repo = get_repository()
    engine = ExecutionEngine(repo, _vault(config), config)
    dispatcher = WebhookDispatcher(repo, engine)
    try:
        outcome = asyncio.run(dispatcher.dispatch(webhook_path, payload))
    except HubflowError as exc:
        _fail(str(exc))

    if outcome.result is None:
        typer.echo(f"Duplicate delivery {outcome.event_uid} ignored")
        return
    result = outcome.result
    typer.echo(f"Execution {result.execution_id}: {result.status} ({result.duration_ms}ms)")
    for step in result.step_logs:
        typer.echo(f"- {step.name}: {step.status}" + (f" ({step.error})" if step.error else ""))
    if result.status == "failed":
        raise typer.Exit(code=1)


@reminders_app.command("dispatch")
def reminders_dispatch(
    now: Optional[str] = typer.Option(None, help="ISO timestamp to use as the current time"),
) -> None:
    """Send due 24h and 1h reminders once."""
    current: Optional[datetime] = None
    if now:
        try:
            current = datetime.fromisoformat(now)
        except ValueError:
            _fail(f"Invalid ISO timestamp: {now}")
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)

    config = load_config()
    scheduler = ReminderScheduler(get_repository(), _vault(config), config)
    result = asyncio.run(scheduler.dispatch_reminders(current))
    for kind in ("24h", "1h"):
        counts = result.counts(kind)
        typer.echo(f"{kind}: {counts.sent} sent, {counts.failed} failed, {counts.skipped} skipped")
    for error in result.errors:
        typer.echo(f"! {error}")


# ----------------------------------------------------------------------
# credentials


@credentials_app.command("add")
def credentials_add(
    service: str,
    api_key: str,
    owner: str = typer.Option(..., help="Owner id"),
    name: Optional[str] = typer.Option(None, help="Display name"),
) -> None:
    """Encrypt and store an API key."""
    vault = _vault(load_config())
    credential = asyncio.run(vault.register(owner, name or service, service, api_key))
    typer.echo(f"Stored {service} credential {credential.id} ({credential.key_hint})")


@credentials_app.command("list")
def credentials_list(owner: str = typer.Option(..., help="Owner id")) -> None:
    """List stored credentials without revealing them."""
    vault = _vault(load_config())
    credentials = asyncio.run(vault.list_for_owner(owner))
    if not credentials:
        typer.echo("No credentials found")
        return
    for cred in credentials:
        valid = "valid" if cred.is_valid else "invalid"
        typer.echo(f"{cred.id}\t{cred.service}\t{cred.name}\t{cred.key_hint}\t{valid}")


@credentials_app.command("test")
def credentials_test(credential_id: str, owner: str = typer.Option(..., help="Owner id")) -> None:
    """Probe the service with a stored key and record the result."""
    vault = _vault(load_config())
    result = asyncio.run(vault.test_connection(credential_id, owner))
    if result is None:
        _fail("Credential not found")
    typer.echo(f"{'OK' if result.ok else 'FAILED'}: {result.message}")
    if not result.ok:
        raise typer.Exit(code=1)


@credentials_app.command("delete")
def credentials_delete(credential_id: str, owner: str = typer.Option(..., help="Owner id")) -> None:
    """Delete a stored credential."""
    vault = _vault(load_config())
    if not asyncio.run(vault.delete(credential_id, owner)):
        _fail("Credential not found")
    typer.echo(f"Deleted credential {credential_id}")


@app.command("keygen")
def keygen() -> None:
    """Print a fresh value for HUBFLOW_ENCRYPTION_KEY."""
    typer.echo(generate_encryption_key())


if __name__ == "__main__":
    app()
