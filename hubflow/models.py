"""Data models for workflows, execution logs, bookings and credentials."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

TriggerType = Literal["webhook", "manual", "schedule"]
WorkflowStatus = Literal["draft", "active", "paused", "error"]
ExecutionStatus = Literal["pending", "running", "success", "degraded", "failed"]
StepStatus = Literal["success", "failed", "skipped"]
BookingStatus = Literal["confirmed", "cancelled", "completed", "no_show"]
ReminderKind = Literal["24h", "1h"]
EmailType = Literal["confirmation", "reminder_24h", "reminder_1h", "no_show", "test"]

TERMINAL_STATUSES = frozenset({"success", "degraded", "failed"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Workflow(BaseModel):
    """A webhook, manual or scheduled integration owned by a user."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType = "webhook"
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    webhook_path: Optional[str] = None
    webhook_secret: Optional[str] = None
    is_enabled: bool = False
    status: WorkflowStatus = "draft"
    required_integrations: list[str] = Field(default_factory=list)
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def kind(self) -> Optional[str]:
        """Provider that selects the fixed step sequence."""
        return self.trigger_config.get("provider")


class StepLog(BaseModel):
    """Record of one attempt of one step inside a run."""

    name: str
    status: StepStatus
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionLog(BaseModel):
    """Audit record of a single run."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    status: ExecutionStatus = "pending"
    trigger_type: str = "webhook"
    input_payload: dict[str, Any] = Field(default_factory=dict)
    output_payload: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    step_logs: list[StepLog] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Booking(BaseModel):
    """A scheduled meeting stored from a scheduling-provider run."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    workflow_id: Optional[str] = None
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    meeting_link: Optional[str] = None
    event_type: Optional[str] = None
    external_id: Optional[str] = None
    status: BookingStatus = "confirmed"
    confirmation_sent_at: Optional[datetime] = None
    reminder_24h_sent_at: Optional[datetime] = None
    reminder_1h_sent_at: Optional[datetime] = None
    reminder_24h_claimed_at: Optional[datetime] = None
    reminder_1h_claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def sent_at(self, kind: str) -> Optional[datetime]:
        return getattr(self, f"reminder_{kind}_sent_at")

    def claimed_at(self, kind: str) -> Optional[datetime]:
        return getattr(self, f"reminder_{kind}_claimed_at")


class Credential(BaseModel):
    """Encrypted third-party API key scoped to an owner and service."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    service: str
    encrypted_key: str
    iv: str
    key_hint: str
    is_valid: bool = True
    last_tested_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EmailLog(BaseModel):
    """Outbound email record shown in the email log view."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    booking_id: Optional[str] = None
    email_type: EmailType
    recipient: str
    subject: str
    sender: str
    status: Literal["sent", "failed"]
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class ExecutionResult(BaseModel):
    """Returned to the caller of ``ExecutionEngine.execute``."""

    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    step_logs: list[StepLog] = Field(default_factory=list)
    output: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status != "failed"


class ReminderCounts(BaseModel):
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class ReminderRunResult(BaseModel):
    """Aggregated outcome of one scheduler pass."""

    reminder_24h: ReminderCounts = Field(default_factory=ReminderCounts)
    reminder_1h: ReminderCounts = Field(default_factory=ReminderCounts)
    errors: list[str] = Field(default_factory=list)

    def counts(self, kind: str) -> ReminderCounts:
        return getattr(self, f"reminder_{kind}")

    @property
    def total_sent(self) -> int:
        return self.reminder_24h.sent + self.reminder_1h.sent

    @property
    def total_failed(self) -> int:
        return self.reminder_24h.failed + self.reminder_1h.failed


class ConnectionTestResult(BaseModel):
    ok: bool
    message: str
