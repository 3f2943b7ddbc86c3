"""In-memory implementation of the repository."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..errors import PersistenceError
from ..models import Booking, Credential, EmailLog, ExecutionLog, Workflow, utcnow
from .repository import Repository
from .schema import (
    CREDENTIALS,
    EXECUTION_LOGS,
    WORKFLOWS,
    reminder_columns,
    validate_columns,
)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class InMemoryRepository(Repository):
    """Store hubflow records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._execution_logs: Dict[str, ExecutionLog] = {}
        self._bookings: Dict[str, Booking] = {}
        self._credentials: Dict[str, Credential] = {}
        self._email_logs: Dict[str, EmailLog] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(record: Optional[BaseModel]) -> Any:
        return record.model_copy(deep=True) if record is not None else None

    @staticmethod
    def _apply(record: BaseModel, changes: dict[str, Any]) -> Any:
        data = record.model_dump()
        data.update(changes)
        return type(record).model_validate(data)

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        async with self._lock:
            if workflow.webhook_path and any(
                w.webhook_path == workflow.webhook_path for w in self._workflows.values()
            ):
                raise PersistenceError(
                    f"Webhook path {workflow.webhook_path} is already in use"
                )
            self._workflows[workflow.id] = self._copy(workflow)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self._copy(self._workflows.get(workflow_id))

    async def get_workflow_by_webhook_path(self, webhook_path: str) -> Workflow | None:
        for wf in self._workflows.values():
            if wf.webhook_path == webhook_path:
                return self._copy(wf)
        return None

    async def list_workflows(self, owner_id: str | None = None) -> list[Workflow]:
        workflows = [
            wf
            for wf in self._workflows.values()
            if owner_id is None or wf.owner_id == owner_id
        ]
        workflows.sort(key=lambda wf: wf.created_at, reverse=True)
        return [self._copy(wf) for wf in workflows]

    async def update_workflow(
        self, workflow_id: str, changes: dict[str, Any]
    ) -> Workflow | None:
        validate_columns(WORKFLOWS, changes)
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None:
                return None
            self._workflows[workflow_id] = self._apply(
                wf, {**changes, "updated_at": utcnow()}
            )
            return self._copy(self._workflows[workflow_id])

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._lock:
            return self._workflows.pop(workflow_id, None) is not None

    async def increment_execution_stats(
        self, workflow_id: str, success: bool, executed_at: datetime
    ) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None:
                return
            wf.total_executions += 1
            if success:
                wf.successful_executions += 1
            else:
                wf.failed_executions += 1
            wf.last_executed_at = executed_at
            wf.updated_at = utcnow()

    # ------------------------------------------------------------------
    # Execution logs
    async def create_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        async with self._lock:
            self._execution_logs[log.id] = self._copy(log)
        return log

    async def update_execution_log(self, log_id: str, changes: dict[str, Any]) -> None:
        validate_columns(EXECUTION_LOGS, changes)
        async with self._lock:
            log = self._execution_logs.get(log_id)
            if log is None:
                raise PersistenceError(f"Execution log {log_id} not found")
            if log.is_terminal:
                raise PersistenceError(
                    f"Execution log {log_id} is {log.status} and can not be modified"
                )
            self._execution_logs[log_id] = self._apply(log, changes)

    async def get_execution_log(self, log_id: str) -> ExecutionLog | None:
        return self._copy(self._execution_logs.get(log_id))

    async def list_execution_logs(
        self, workflow_id: str | None = None, limit: int = 50
    ) -> list[ExecutionLog]:
        logs = [
            log
            for log in self._execution_logs.values()
            if workflow_id is None or log.workflow_id == workflow_id
        ]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return [self._copy(log) for log in logs[:limit]]

    # ------------------------------------------------------------------
    # Bookings
    async def create_booking(self, booking: Booking) -> Booking:
        async with self._lock:
            self._bookings[booking.id] = self._copy(booking)
        return booking

    async def get_booking(self, booking_id: str) -> Booking | None:
        return self._copy(self._bookings.get(booking_id))

    async def get_booking_by_external_id(self, external_id: str) -> Booking | None:
        for booking in self._bookings.values():
            if booking.external_id == external_id:
                return self._copy(booking)
        return None

    async def get_latest_booking_by_email(self, email: str, owner_id: str) -> Booking | None:
        matches = [
            b for b in self._bookings.values() if b.email == email and b.owner_id == owner_id
        ]
        if not matches:
            return None
        return self._copy(max(matches, key=lambda b: b.created_at))

    async def list_bookings(self, owner_id: str, limit: int = 50) -> list[Booking]:
        bookings = [b for b in self._bookings.values() if b.owner_id == owner_id]
        bookings.sort(key=lambda b: b.start_time)
        return [self._copy(b) for b in bookings[:limit]]

    async def update_booking_status(self, booking_id: str, status: str) -> None:
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is not None:
                self._bookings[booking_id] = self._apply(
                    booking, {"status": status, "updated_at": utcnow()}
                )

    async def mark_confirmation_sent(self, booking_id: str, sent_at: datetime) -> None:
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is not None and booking.confirmation_sent_at is None:
                booking.confirmation_sent_at = sent_at
                booking.updated_at = utcnow()

    @staticmethod
    def _claimable(booking: Booking, kind: str, lease_cutoff: datetime) -> bool:
        if booking.sent_at(kind) is not None:
            return False
        claimed = booking.claimed_at(kind)
        return claimed is None or _aware(claimed) < _aware(lease_cutoff)

    async def find_bookings_due(
        self,
        kind: str,
        window_start: datetime,
        window_end: datetime,
        lease_cutoff: datetime,
    ) -> list[Booking]:
        reminder_columns(kind)
        start, end = _aware(window_start), _aware(window_end)
        due = [
            b
            for b in self._bookings.values()
            if b.status == "confirmed"
            and start <= _aware(b.start_time) < end
            and self._claimable(b, kind, lease_cutoff)
        ]
        due.sort(key=lambda b: b.start_time)
        return [self._copy(b) for b in due]

    async def claim_reminder(
        self, booking_id: str, kind: str, claimed_at: datetime, lease_cutoff: datetime
    ) -> bool:
        _, claim_col = reminder_columns(kind)
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is None or not self._claimable(booking, kind, lease_cutoff):
                return False
            setattr(booking, claim_col, claimed_at)
            booking.updated_at = utcnow()
            return True

    async def release_reminder_claim(self, booking_id: str, kind: str) -> None:
        _, claim_col = reminder_columns(kind)
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is not None and booking.sent_at(kind) is None:
                setattr(booking, claim_col, None)

    async def mark_reminder_sent(
        self, booking_id: str, kind: str, sent_at: datetime
    ) -> bool:
        sent_col, _ = reminder_columns(kind)
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is None or booking.sent_at(kind) is not None:
                return False
            setattr(booking, sent_col, sent_at)
            booking.updated_at = utcnow()
            return True

    # ------------------------------------------------------------------
    # Credentials
    async def create_credential(self, credential: Credential) -> Credential:
        async with self._lock:
            self._credentials[credential.id] = self._copy(credential)
        return credential

    async def get_credential(self, credential_id: str, owner_id: str) -> Credential | None:
        cred = self._credentials.get(credential_id)
        if cred is None or cred.owner_id != owner_id:
            return None
        return self._copy(cred)

    async def get_credential_by_service(
        self, owner_id: str, service: str
    ) -> Credential | None:
        matches = [
            c
            for c in self._credentials.values()
            if c.owner_id == owner_id and c.service == service
        ]
        if not matches:
            return None
        return self._copy(max(matches, key=lambda c: c.created_at))

    async def list_credentials(self, owner_id: str) -> list[Credential]:
        creds = [c for c in self._credentials.values() if c.owner_id == owner_id]
        creds.sort(key=lambda c: c.created_at)
        return [self._copy(c) for c in creds]

    async def update_credential(
        self, credential_id: str, owner_id: str, changes: dict[str, Any]
    ) -> Credential | None:
        validate_columns(CREDENTIALS, changes)
        async with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None or cred.owner_id != owner_id:
                return None
            self._credentials[credential_id] = self._apply(
                cred, {**changes, "updated_at": utcnow()}
            )
            return self._copy(self._credentials[credential_id])

    async def delete_credential(self, credential_id: str, owner_id: str) -> bool:
        async with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None or cred.owner_id != owner_id:
                return False
            del self._credentials[credential_id]
            return True

    # ------------------------------------------------------------------
    # Email logs
    async def create_email_log(self, log: EmailLog) -> EmailLog:
        async with self._lock:
            self._email_logs[log.id] = self._copy(log)
        return log

    async def list_email_logs(
        self, owner_id: str | None = None, booking_id: str | None = None, limit: int = 100
    ) -> list[EmailLog]:
        logs = [
            log
            for log in self._email_logs.values()
            if (owner_id is None or log.owner_id == owner_id)
            and (booking_id is None or log.booking_id == booking_id)
        ]
        logs.sort(key=lambda log: log.sent_at, reverse=True)
        return [self._copy(log) for log in logs[:limit]]
