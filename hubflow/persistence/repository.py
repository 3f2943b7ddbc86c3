"""Repository abstraction for hubflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..models import Booking, Credential, EmailLog, ExecutionLog, Workflow


class Repository(Protocol):
    """Protocol for storage backends.

    Every method raises ``PersistenceError`` when the backend fails.
    """

    # -- workflows -------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Persist a new workflow."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def get_workflow_by_webhook_path(self, webhook_path: str) -> Workflow | None:
        """Resolve the workflow bound to an inbound webhook path."""

    async def list_workflows(self, owner_id: str | None = None) -> list[Workflow]:
        """Return workflows, newest first, optionally for one owner."""

    async def update_workflow(
        self, workflow_id: str, changes: dict[str, Any]
    ) -> Workflow | None:
        """Apply ``changes`` and return the updated workflow."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow. Returns ``False`` when it did not exist."""

    async def increment_execution_stats(
        self, workflow_id: str, success: bool, executed_at: datetime
    ) -> None:
        """Atomically bump total and success/failure counters."""

    # -- execution logs --------------------------------------------------
    async def create_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        """Persist a new execution log."""

    async def update_execution_log(self, log_id: str, changes: dict[str, Any]) -> None:
        """Update a non-terminal execution log."""

    async def get_execution_log(self, log_id: str) -> ExecutionLog | None:
        """Retrieve an execution log with its step logs."""

    async def list_execution_logs(
        self, workflow_id: str | None = None, limit: int = 50
    ) -> list[ExecutionLog]:
        """Return execution logs, newest first."""

    # -- bookings --------------------------------------------------------
    async def create_booking(self, booking: Booking) -> Booking:
        """Persist a new booking."""

    async def get_booking(self, booking_id: str) -> Booking | None:
        """Retrieve a booking by id."""

    async def get_booking_by_external_id(self, external_id: str) -> Booking | None:
        """Retrieve a booking by the scheduling provider's id."""

    async def get_latest_booking_by_email(self, email: str, owner_id: str) -> Booking | None:
        """Return an owner's most recently created booking for an email."""

    async def list_bookings(self, owner_id: str, limit: int = 50) -> list[Booking]:
        """Return an owner's bookings."""

    async def update_booking_status(self, booking_id: str, status: str) -> None:
        """Set the booking status."""

    async def mark_confirmation_sent(self, booking_id: str, sent_at: datetime) -> None:
        """Record that the confirmation email went out."""

    async def find_bookings_due(
        self,
        kind: str,
        window_start: datetime,
        window_end: datetime,
        lease_cutoff: datetime,
    ) -> list[Booking]:
        """Confirmed bookings starting in ``[window_start, window_end)``.

        Excludes bookings whose ``kind`` reminder was sent or is claimed by a
        lease newer than ``lease_cutoff``.
        """

    async def claim_reminder(
        self, booking_id: str, kind: str, claimed_at: datetime, lease_cutoff: datetime
    ) -> bool:
        """Conditionally claim a reminder. ``False`` if sent or claimed."""

    async def release_reminder_claim(self, booking_id: str, kind: str) -> None:
        """Drop a claim after a failed send so a later pass may retry."""

    async def mark_reminder_sent(
        self, booking_id: str, kind: str, sent_at: datetime
    ) -> bool:
        """Set ``reminder_<kind>_sent_at`` if still unset."""

    # -- credentials -----------------------------------------------------
    async def create_credential(self, credential: Credential) -> Credential:
        """Persist an encrypted credential."""

    async def get_credential(self, credential_id: str, owner_id: str) -> Credential | None:
        """Retrieve a credential by id and owner."""

    async def get_credential_by_service(
        self, owner_id: str, service: str
    ) -> Credential | None:
        """Retrieve an owner's credential for a service."""

    async def list_credentials(self, owner_id: str) -> list[Credential]:
        """Return an owner's credentials."""

    async def update_credential(
        self, credential_id: str, owner_id: str, changes: dict[str, Any]
    ) -> Credential | None:
        """Apply ``changes`` and return the updated credential."""

    async def delete_credential(self, credential_id: str, owner_id: str) -> bool:
        """Delete a credential. Returns ``False`` when it did not exist."""

    # -- email logs ------------------------------------------------------
    async def create_email_log(self, log: EmailLog) -> EmailLog:
        """Persist an outbound email record."""

    async def list_email_logs(
        self, owner_id: str | None = None, booking_id: str | None = None, limit: int = 100
    ) -> list[EmailLog]:
        """Return email logs, newest first."""
