"""SQLite implementation of the repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from ..errors import PersistenceError
from ..models import TERMINAL_STATUSES, Booking, Credential, EmailLog, ExecutionLog, Workflow
from .repository import Repository
from .schema import (
    ALL_TABLES,
    BOOKINGS,
    CREDENTIALS,
    EMAIL_LOGS,
    EXECUTION_LOGS,
    INDEXES,
    WORKFLOWS,
    Table,
    dump_json_value,
    reminder_columns,
    validate_columns,
)


def _format_time(value: datetime) -> str:
    # Fixed width so that string comparison in SQL orders correctly
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class SQLiteRepository(Repository):
    """Persist hubflow records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open SQLite database {self.db_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for table in ALL_TABLES:
            cur.execute(table.create_statement("sqlite"))
        for statement in INDEXES:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"SQLite write failed: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite read failed: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite read failed: {exc}") from exc

    @staticmethod
    def _to_db(table: Table, column: str, value: Any) -> Any:
        if value is None:
            return None
        if column in table.json_columns:
            return json.dumps(dump_json_value(value))
        if column in table.time_columns:
            return _format_time(value)
        if column in table.bool_columns:
            return int(bool(value))
        return value

    @staticmethod
    def _from_row(table: Table, row: sqlite3.Row) -> Any:
        data: dict[str, Any] = {}
        for column in table.columns:
            value = row[column]
            if value is not None and column in table.json_columns:
                value = json.loads(value)
            elif value is not None and column in table.bool_columns:
                value = bool(value)
            data[column] = value
        return table.model.model_validate(data)

    async def _insert(self, table: Table, record: BaseModel) -> None:
        columns = table.columns
        values = [self._to_db(table, c, getattr(record, c)) for c in columns]
        placeholders = ", ".join("?" for _ in columns)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO {table.name} ({', '.join(columns)}) VALUES ({placeholders})",
            *values,
        )

    async def _select_one(self, table: Table, where: str, *params: Any) -> Any:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {', '.join(table.columns)} FROM {table.name} WHERE {where}",
            *params,
        )
        return self._from_row(table, row) if row else None

    async def _select_many(self, table: Table, where: str, *params: Any) -> list[Any]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {', '.join(table.columns)} FROM {table.name} {where}",
            *params,
        )
        return [self._from_row(table, r) for r in rows]

    async def _update(
        self, table: Table, changes: dict[str, Any], where: str, *params: Any
    ) -> int:
        validate_columns(table, changes)
        if not changes:
            return 0
        assignments = ", ".join(f"{c} = ?" for c in changes)
        values = [self._to_db(table, c, v) for c, v in changes.items()]
        return await asyncio.to_thread(
            self._execute,
            f"UPDATE {table.name} SET {assignments} WHERE {where}",
            *values,
            *params,
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await self._insert(WORKFLOWS, workflow)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._select_one(WORKFLOWS, "id = ?", workflow_id)

    async def get_workflow_by_webhook_path(self, webhook_path: str) -> Workflow | None:
        return await self._select_one(WORKFLOWS, "webhook_path = ?", webhook_path)

    async def list_workflows(self, owner_id: str | None = None) -> list[Workflow]:
        if owner_id is None:
            return await self._select_many(WORKFLOWS, "ORDER BY created_at DESC")
        return await self._select_many(
            WORKFLOWS, "WHERE owner_id = ? ORDER BY created_at DESC", owner_id
        )

    async def update_workflow(
        self, workflow_id: str, changes: dict[str, Any]
    ) -> Workflow | None:
        changes = {**changes, "updated_at": self._now()}
        await self._update(WORKFLOWS, changes, "id = ?", workflow_id)
        return await self.get_workflow(workflow_id)

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return count > 0

    async def increment_execution_stats(
        self, workflow_id: str, success: bool, executed_at: datetime
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET total_executions = total_executions + 1,
                successful_executions = successful_executions + ?,
                failed_executions = failed_executions + ?,
                last_executed_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            1 if success else 0,
            0 if success else 1,
            _format_time(executed_at),
            _format_time(self._now()),
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Execution logs
    async def create_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        await self._insert(EXECUTION_LOGS, log)
        return log

    async def update_execution_log(self, log_id: str, changes: dict[str, Any]) -> None:
        terminal = sorted(TERMINAL_STATUSES)
        count = await self._update(
            EXECUTION_LOGS,
            changes,
            f"id = ? AND status NOT IN ({', '.join('?' for _ in terminal)})",
            log_id,
            *terminal,
        )
        if count == 0 and changes:
            existing = await self.get_execution_log(log_id)
            if existing is None:
                raise PersistenceError(f"Execution log {log_id} not found")
            raise PersistenceError(
                f"Execution log {log_id} is {existing.status} and can not be modified"
            )

    async def get_execution_log(self, log_id: str) -> ExecutionLog | None:
        return await self._select_one(EXECUTION_LOGS, "id = ?", log_id)

    async def list_execution_logs(
        self, workflow_id: str | None = None, limit: int = 50
    ) -> list[ExecutionLog]:
        if workflow_id is None:
            return await self._select_many(
                EXECUTION_LOGS, "ORDER BY started_at DESC LIMIT ?", limit
            )
        return await self._select_many(
            EXECUTION_LOGS,
            "WHERE workflow_id = ? ORDER BY started_at DESC LIMIT ?",
            workflow_id,
            limit,
        )

    # ------------------------------------------------------------------
    # Bookings
    async def create_booking(self, booking: Booking) -> Booking:
        await self._insert(BOOKINGS, booking)
        return booking

    async def get_booking(self, booking_id: str) -> Booking | None:
        return await self._select_one(BOOKINGS, "id = ?", booking_id)

    async def get_booking_by_external_id(self, external_id: str) -> Booking | None:
        return await self._select_one(BOOKINGS, "external_id = ?", external_id)

    async def get_latest_booking_by_email(self, email: str, owner_id: str) -> Booking | None:
        rows = await self._select_many(
            BOOKINGS,
            "WHERE email = ? AND owner_id = ? ORDER BY created_at DESC LIMIT 1",
            email,
            owner_id,
        )
        return rows[0] if rows else None

    async def list_bookings(self, owner_id: str, limit: int = 50) -> list[Booking]:
        return await self._select_many(
            BOOKINGS, "WHERE owner_id = ? ORDER BY start_time LIMIT ?", owner_id, limit
        )

    async def update_booking_status(self, booking_id: str, status: str) -> None:
        await self._update(
            BOOKINGS, {"status": status, "updated_at": self._now()}, "id = ?", booking_id
        )

    async def mark_confirmation_sent(self, booking_id: str, sent_at: datetime) -> None:
        await self._update(
            BOOKINGS,
            {"confirmation_sent_at": sent_at, "updated_at": self._now()},
            "id = ? AND confirmation_sent_at IS NULL",
            booking_id,
        )

    async def find_bookings_due(
        self,
        kind: str,
        window_start: datetime,
        window_end: datetime,
        lease_cutoff: datetime,
    ) -> list[Booking]:
        sent_col, claim_col = reminder_columns(kind)
        return await self._select_many(
            BOOKINGS,
            f"""
            WHERE status = 'confirmed'
              AND start_time >= ? AND start_time < ?
              AND {sent_col} IS NULL
              AND ({claim_col} IS NULL OR {claim_col} < ?)
            ORDER BY start_time
            """,
            _format_time(window_start),
            _format_time(window_end),
            _format_time(lease_cutoff),
        )

    async def claim_reminder(
        self, booking_id: str, kind: str, claimed_at: datetime, lease_cutoff: datetime
    ) -> bool:
        sent_col, claim_col = reminder_columns(kind)
        count = await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE bookings SET {claim_col} = ?, updated_at = ?
            WHERE id = ? AND {sent_col} IS NULL
              AND ({claim_col} IS NULL OR {claim_col} < ?)
            """,
            _format_time(claimed_at),
            _format_time(self._now()),
            booking_id,
            _format_time(lease_cutoff),
        )
        return count == 1

    async def release_reminder_claim(self, booking_id: str, kind: str) -> None:
        sent_col, claim_col = reminder_columns(kind)
        await asyncio.to_thread(
            self._execute,
            f"UPDATE bookings SET {claim_col} = NULL WHERE id = ? AND {sent_col} IS NULL",
            booking_id,
        )

    async def mark_reminder_sent(
        self, booking_id: str, kind: str, sent_at: datetime
    ) -> bool:
        sent_col, _ = reminder_columns(kind)
        count = await asyncio.to_thread(
            self._execute,
            f"UPDATE bookings SET {sent_col} = ?, updated_at = ? WHERE id = ? AND {sent_col} IS NULL",
            _format_time(sent_at),
            _format_time(self._now()),
            booking_id,
        )
        return count == 1

    # ------------------------------------------------------------------
    # Credentials
    async def create_credential(self, credential: Credential) -> Credential:
        await self._insert(CREDENTIALS, credential)
        return credential

    async def get_credential(self, credential_id: str, owner_id: str) -> Credential | None:
        return await self._select_one(
            CREDENTIALS, "id = ? AND owner_id = ?", credential_id, owner_id
        )

    async def get_credential_by_service(
        self, owner_id: str, service: str
    ) -> Credential | None:
        rows = await self._select_many(
            CREDENTIALS,
            "WHERE owner_id = ? AND service = ? ORDER BY created_at DESC LIMIT 1",
            owner_id,
            service,
        )
        return rows[0] if rows else None

    async def list_credentials(self, owner_id: str) -> list[Credential]:
        return await self._select_many(
            CREDENTIALS, "WHERE owner_id = ? ORDER BY created_at", owner_id
        )

    async def update_credential(
        self, credential_id: str, owner_id: str, changes: dict[str, Any]
    ) -> Credential | None:
        changes = {**changes, "updated_at": self._now()}
        await self._update(
            CREDENTIALS, changes, "id = ? AND owner_id = ?", credential_id, owner_id
        )
        return await self.get_credential(credential_id, owner_id)

    async def delete_credential(self, credential_id: str, owner_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            "DELETE FROM credentials WHERE id = ? AND owner_id = ?",
            credential_id,
            owner_id,
        )
        return count > 0

    # ------------------------------------------------------------------
    # Email logs
    async def create_email_log(self, log: EmailLog) -> EmailLog:
        await self._insert(EMAIL_LOGS, log)
        return log

    async def list_email_logs(
        self, owner_id: str | None = None, booking_id: str | None = None, limit: int = 100
    ) -> list[EmailLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if booking_id is not None:
            clauses.append("booking_id = ?")
            params.append(booking_id)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        return await self._select_many(
            EMAIL_LOGS, f"{where}ORDER BY sent_at DESC LIMIT ?", *params, limit
        )

    def close(self) -> None:
        self._conn.close()
