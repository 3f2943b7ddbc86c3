"""Slack incoming-webhook notifications."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import HttpConfig
from ..errors import NotificationError
from ..models import ExecutionLog, ReminderRunResult

logger = logging.getLogger(__name__)

STEP_EMOJI = {
    "success": ":white_check_mark:",
    "skipped": ":fast_forward:",
    "failed": ":x:",
}

STATUS_HEADLINE = {
    "success": ("white_check_mark", "Workflow succeeded"),
    "degraded": ("warning", "Workflow degraded"),
    "failed": ("x", "Workflow failed"),
}


class SlackNotifier:
    """Posts ``{text, blocks}`` messages to a Slack webhook.

    Delivery is best-effort: ``notify`` logs and returns ``False`` instead
    of raising.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        http: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self._http = http or HttpConfig()
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def post(self, message: dict[str, Any]) -> None:
        """Send a message or raise ``NotificationError``."""
        if not self.webhook_url:
            raise NotificationError("Slack webhook URL not configured")
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._http.timeout), transport=self._transport
        ) as client:
            try:
                response = await client.post(self.webhook_url, json=message)
            except httpx.HTTPError as exc:
                raise NotificationError(f"Slack webhook request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotificationError(
                f"Slack webhook error {response.status_code}: {response.text[:200]}"
            )

    async def notify(self, text: str, blocks: Optional[list[dict[str, Any]]] = None) -> bool:
        message: dict[str, Any] = {"text": text}
        if blocks:
            message["blocks"] = blocks
        try:
            await self.post(message)
        except NotificationError as exc:
            logger.warning(f"Slack notification not delivered: {exc}")
            return False
        return True


def format_execution_log(workflow_name: str, log: ExecutionLog) -> dict[str, Any]:
    """Block Kit summary of a finished run."""
    emoji, headline = STATUS_HEADLINE.get(log.status, ("grey_question", "Workflow finished"))
    steps = "\n".join(
        f"{STEP_EMOJI.get(step.status, '')} {step.name}"
        + (f" - {step.error}" if step.error else "")
        for step in log.step_logs
    ) or "No steps"

    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f":{emoji}: {headline}", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Workflow:*\n{workflow_name}"},
                {"type": "mrkdwn", "text": f"*Duration:*\n{log.duration_ms or 0}ms"},
                {"type": "mrkdwn", "text": f"*Trigger:*\n{log.trigger_type}"},
                {"type": "mrkdwn", "text": f"*Status:*\n{log.status}"},
            ],
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*Steps:*\n{steps}"}},
    ]
    if log.error_message:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:*\n```{log.error_message}```"},
            }
        )
    blocks.append({"type": "divider"})
    prefix = "Failure" if log.status == "failed" else "Success"
    return {"text": f"{prefix}: {workflow_name}", "blocks": blocks}


def format_reminder_summary(result: ReminderRunResult) -> dict[str, Any]:
    lines = [
        f"*24h reminders:* {result.reminder_24h.sent} sent, "
        f"{result.reminder_24h.failed} failed, {result.reminder_24h.skipped} skipped",
        f"*1h reminders:* {result.reminder_1h.sent} sent, "
        f"{result.reminder_1h.failed} failed, {result.reminder_1h.skipped} skipped",
    ]
    if result.errors:
        lines.append("*Errors:*\n" + "\n".join(f"- {e}" for e in result.errors[:10]))
    return {
        "text": f"Reminders: {result.total_sent} sent, {result.total_failed} failed",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": ":alarm_clock: Reminder run", "emoji": True},
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}},
        ],
    }
