"""Table layout shared by the SQL backends."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel

from ..models import Booking, Credential, EmailLog, ExecutionLog, Workflow

REMINDER_KINDS = ("24h", "1h")


@dataclass(frozen=True)
class Table:
    name: str
    model: type[BaseModel]
    json_columns: frozenset[str] = frozenset()
    time_columns: frozenset[str] = frozenset()
    bool_columns: frozenset[str] = frozenset()
    int_columns: frozenset[str] = frozenset()

    @property
    def columns(self) -> list[str]:
        return list(self.model.model_fields)

    def column_type(self, column: str, dialect: str) -> str:
        if column == "id":
            return "TEXT PRIMARY KEY"
        if column in self.json_columns:
            return "JSONB" if dialect == "postgres" else "TEXT"
        if column in self.time_columns:
            return "TIMESTAMPTZ" if dialect == "postgres" else "TEXT"
        if column in self.bool_columns:
            return "BOOLEAN" if dialect == "postgres" else "INTEGER"
        if column in self.int_columns:
            return "BIGINT" if dialect == "postgres" else "INTEGER"
        return "TEXT"

    def create_statement(self, dialect: str) -> str:
        cols = ",\n    ".join(
            f"{col} {self.column_type(col, dialect)}" for col in self.columns
        )
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {cols}\n)"


WORKFLOWS = Table(
    "workflows",
    Workflow,
    json_columns=frozenset({"trigger_config", "required_integrations"}),
    time_columns=frozenset({"last_executed_at", "created_at", "updated_at"}),
    bool_columns=frozenset({"is_enabled"}),
    int_columns=frozenset(
        {"total_executions", "successful_executions", "failed_executions"}
    ),
)

EXECUTION_LOGS = Table(
    "execution_logs",
    ExecutionLog,
    json_columns=frozenset({"input_payload", "output_payload", "step_logs"}),
    time_columns=frozenset({"started_at", "completed_at"}),
    int_columns=frozenset({"duration_ms"}),
)

BOOKINGS = Table(
    "bookings",
    Booking,
    time_columns=frozenset(
        {
            "start_time",
            "end_time",
            "confirmation_sent_at",
            "reminder_24h_sent_at",
            "reminder_1h_sent_at",
            "reminder_24h_claimed_at",
            "reminder_1h_claimed_at",
            "created_at",
            "updated_at",
        }
    ),
)

CREDENTIALS = Table(
    "credentials",
    Credential,
    time_columns=frozenset({"last_tested_at", "created_at", "updated_at"}),
    bool_columns=frozenset({"is_valid"}),
)

EMAIL_LOGS = Table(
    "email_logs",
    EmailLog,
    time_columns=frozenset({"sent_at"}),
)

ALL_TABLES = (WORKFLOWS, EXECUTION_LOGS, BOOKINGS, CREDENTIALS, EMAIL_LOGS)

INDEXES = (
    "CREATE UNIQUE INDEX IF NOT EXISTS ix_workflows_webhook_path ON workflows (webhook_path)",
    "CREATE INDEX IF NOT EXISTS ix_execution_logs_workflow ON execution_logs (workflow_id, started_at)",
    "CREATE INDEX IF NOT EXISTS ix_bookings_start ON bookings (status, start_time)",
    "CREATE INDEX IF NOT EXISTS ix_credentials_owner_service ON credentials (owner_id, service)",
)


def validate_columns(table: Table, changes: Iterable[str]) -> None:
    unknown = set(changes) - set(table.columns)
    if unknown:
        raise ValueError(f"Unknown columns for {table.name}: {sorted(unknown)}")


def reminder_columns(kind: str) -> tuple[str, str]:
    """Return the ``(sent_at, claimed_at)`` column names for a reminder kind."""
    if kind not in REMINDER_KINDS:
        raise ValueError(f"Unknown reminder kind: {kind}")
    return f"reminder_{kind}_sent_at", f"reminder_{kind}_claimed_at"


def dump_json_value(value: Any) -> Any:
    """Make nested models and datetimes JSON serializable."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [dump_json_value(v) for v in value]
    if isinstance(value, dict):
        return {k: dump_json_value(v) for k, v in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return value
