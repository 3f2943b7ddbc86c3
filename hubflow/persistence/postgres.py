"""PostgreSQL implementation of the repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import asyncpg

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


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PostgresRepository(Repository):
    """Persist hubflow records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for table in ALL_TABLES:
            await conn.execute(table.create_statement("postgres"))
        for statement in INDEXES:
            await conn.execute(statement)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except (OSError, asyncpg.PostgresError) as exc:
            raise PersistenceError(f"Could not connect to PostgreSQL: {exc}") from exc
        try:
            yield conn
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"PostgreSQL query failed: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    def _to_db(table: Table, column: str, value: Any) -> Any:
        if value is None:
            return None
        if column in table.json_columns:
            return json.dumps(dump_json_value(value))
        if column in table.time_columns:
            return _aware(value)
        return value

    @staticmethod
    def _from_record(table: Table, record: asyncpg.Record) -> Any:
        data = dict(record)
        for column in table.json_columns:
            if isinstance(data.get(column), str):
                data[column] = json.loads(data[column])
        return table.model.model_validate(data)

    @staticmethod
    def _status_count(result: str) -> int:
        # asyncpg returns command tags such as "UPDATE 1"
        return int(result.split()[-1])

    async def _execute(self, query: str, *params: Any) -> int:
        async with self._connection() as conn:
            return self._status_count(await conn.execute(query, *params))

    async def _insert(self, table: Table, record: Any) -> None:
        columns = table.columns
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        values = [self._to_db(table, c, getattr(record, c)) for c in columns]
        await self._execute(
            f"INSERT INTO {table.name} ({', '.join(columns)}) VALUES ({placeholders})",
            *values,
        )

    async def _select(self, table: Table, clause: str, *params: Any) -> list[Any]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {', '.join(table.columns)} FROM {table.name} {clause}", *params
            )
        return [self._from_record(table, row) for row in rows]

    async def _select_one(self, table: Table, clause: str, *params: Any) -> Any:
        rows = await self._select(table, f"{clause} LIMIT 1", *params)
        return rows[0] if rows else None

    async def _update(
        self, table: Table, changes: dict[str, Any], where: str, *params: Any
    ) -> int:
        """Run ``UPDATE``; ``where`` numbers its placeholders from ``$1``."""
        validate_columns(table, changes)
        if not changes:
            return 0
        offset = len(params)
        assignments = ", ".join(
            f"{col} = ${offset + i}" for i, col in enumerate(changes, start=1)
        )
        values = [self._to_db(table, c, v) for c, v in changes.items()]
        return await self._execute(
            f"UPDATE {table.name} SET {assignments} WHERE {where}", *params, *values
        )

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await self._insert(WORKFLOWS, workflow)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._select_one(WORKFLOWS, "WHERE id = $1", workflow_id)

    async def get_workflow_by_webhook_path(self, webhook_path: str) -> Workflow | None:
        return await self._select_one(WORKFLOWS, "WHERE webhook_path = $1", webhook_path)

    async def list_workflows(self, owner_id: str | None = None) -> list[Workflow]:
        if owner_id is None:
            return await self._select(WORKFLOWS, "ORDER BY created_at DESC")
        return await self._select(
            WORKFLOWS, "WHERE owner_id = $1 ORDER BY created_at DESC", owner_id
        )

    async def update_workflow(
        self, workflow_id: str, changes: dict[str, Any]
    ) -> Workflow | None:
        changes = {**changes, "updated_at": datetime.now(timezone.utc)}
        await self._update(WORKFLOWS, changes, "id = $1", workflow_id)
        return await self.get_workflow(workflow_id)

    async def delete_workflow(self, workflow_id: str) -> bool:
        return await self._execute("DELETE FROM workflows WHERE id = $1", workflow_id) > 0

    async def increment_execution_stats(
        self, workflow_id: str, success: bool, executed_at: datetime
    ) -> None:
        await self._execute(
            """
            UPDATE workflows
            SET total_executions = total_executions + 1,
                successful_executions = successful_executions + $2,
                failed_executions = failed_executions + $3,
                last_executed_at = $4,
                updated_at = now()
            WHERE id = $1
            """,
            workflow_id,
            1 if success else 0,
            0 if success else 1,
            _aware(executed_at),
        )

    # ------------------------------------------------------------------
    # Execution logs
    async def create_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        await self._insert(EXECUTION_LOGS, log)
        return log

    async def update_execution_log(self, log_id: str, changes: dict[str, Any]) -> None:
        count = await self._update(
            EXECUTION_LOGS,
            changes,
            "id = $1 AND status <> ALL($2::text[])",
            log_id,
            sorted(TERMINAL_STATUSES),
        )
        if count == 0 and changes:
            existing = await self.get_execution_log(log_id)
            if existing is None:
                raise PersistenceError(f"Execution log {log_id} not found")
            raise PersistenceError(
                f"Execution log {log_id} is {existing.status} and can not be modified"
            )

    async def get_execution_log(self, log_id: str) -> ExecutionLog | None:
        return await self._select_one(EXECUTION_LOGS, "WHERE id = $1", log_id)

    async def list_execution_logs(
        self, workflow_id: str | None = None, limit: int = 50
    ) -> list[ExecutionLog]:
        if workflow_id is None:
            return await self._select(
                EXECUTION_LOGS, "ORDER BY started_at DESC LIMIT $1", limit
            )
        return await self._select(
            EXECUTION_LOGS,
            "WHERE workflow_id = $1 ORDER BY started_at DESC LIMIT $2",
            workflow_id,
            limit,
        )

    # ------------------------------------------------------------------
    # Bookings
    async def create_booking(self, booking: Booking) -> Booking:
        await self._insert(BOOKINGS, booking)
        return booking

    async def get_booking(self, booking_id: str) -> Booking | None:
        return await self._select_one(BOOKINGS, "WHERE id = $1", booking_id)

    async def get_booking_by_external_id(self, external_id: str) -> Booking | None:
        return await self._select_one(BOOKINGS, "WHERE external_id = $1", external_id)

    async def get_latest_booking_by_email(self, email: str, owner_id: str) -> Booking | None:
        return await self._select_one(
            BOOKINGS,
            "WHERE email = $1 AND owner_id = $2 ORDER BY created_at DESC",
            email,
            owner_id,
        )

    async def list_bookings(self, owner_id: str, limit: int = 50) -> list[Booking]:
        return await self._select(
            BOOKINGS, "WHERE owner_id = $1 ORDER BY start_time LIMIT $2", owner_id, limit
        )

    async def update_booking_status(self, booking_id: str, status: str) -> None:
        await self._execute(
            "UPDATE bookings SET status = $2, updated_at = now() WHERE id = $1",
            booking_id,
            status,
        )

    async def mark_confirmation_sent(self, booking_id: str, sent_at: datetime) -> None:
        await self._execute(
            """
            UPDATE bookings SET confirmation_sent_at = $2, updated_at = now()
            WHERE id = $1 AND confirmation_sent_at IS NULL
            """,
            booking_id,
            _aware(sent_at),
        )

    async def find_bookings_due(
        self,
        kind: str,
        window_start: datetime,
        window_end: datetime,
        lease_cutoff: datetime,
    ) -> list[Booking]:
        sent_col, claim_col = reminder_columns(kind)
        return await self._select(
            BOOKINGS,
            f"""
            WHERE status = 'confirmed'
              AND start_time >= $1 AND start_time < $2
              AND {sent_col} IS NULL
              AND ({claim_col} IS NULL OR {claim_col} < $3)
            ORDER BY start_time
            """,
            _aware(window_start),
            _aware(window_end),
            _aware(lease_cutoff),
        )

    async def claim_reminder(
        self, booking_id: str, kind: str, claimed_at: datetime, lease_cutoff: datetime
    ) -> bool:
        sent_col, claim_col = reminder_columns(kind)
        count = await self._execute(
            f"""
            UPDATE bookings SET {claim_col} = $2, updated_at = now()
            WHERE id = $1 AND {sent_col} IS NULL
              AND ({claim_col} IS NULL OR {claim_col} < $3)
            """,
            booking_id,
            _aware(claimed_at),
            _aware(lease_cutoff),
        )
        return count == 1

    async def release_reminder_claim(self, booking_id: str, kind: str) -> None:
        sent_col, claim_col = reminder_columns(kind)
        await self._execute(
            f"UPDATE bookings SET {claim_col} = NULL WHERE id = $1 AND {sent_col} IS NULL",
            booking_id,
        )

    async def mark_reminder_sent(
        self, booking_id: str, kind: str, sent_at: datetime
    ) -> bool:
        sent_col, _ = reminder_columns(kind)
        count = await self._execute(
            f"""
            UPDATE bookings SET {sent_col} = $2, updated_at = now()
            WHERE id = $1 AND {sent_col} IS NULL
            """,
            booking_id,
            _aware(sent_at),
        )
        return count == 1

    # ------------------------------------------------------------------
    # Credentials
    async def create_credential(self, credential: Credential) -> Credential:
        await self._insert(CREDENTIALS, credential)
        return credential

    async def get_credential(self, credential_id: str, owner_id: str) -> Credential | None:
        return await self._select_one(
            CREDENTIALS, "WHERE id = $1 AND owner_id = $2", credential_id, owner_id
        )

    async def get_credential_by_service(
        self, owner_id: str, service: str
    ) -> Credential | None:
        return await self._select_one(
            CREDENTIALS,
            "WHERE owner_id = $1 AND service = $2 ORDER BY created_at DESC",
            owner_id,
            service,
        )

    async def list_credentials(self, owner_id: str) -> list[Credential]:
        return await self._select(
            CREDENTIALS, "WHERE owner_id = $1 ORDER BY created_at", owner_id
        )

    async def update_credential(
        self, credential_id: str, owner_id: str, changes: dict[str, Any]
    ) -> Credential | None:
        changes = {**changes, "updated_at": datetime.now(timezone.utc)}
        await self._update(
            CREDENTIALS, changes, "id = $1 AND owner_id = $2", credential_id, owner_id
        )
        return await self.get_credential(credential_id, owner_id)

    async def delete_credential(self, credential_id: str, owner_id: str) -> bool:
        count = await self._execute(
            "DELETE FROM credentials WHERE id = $1 AND owner_id = $2",
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
            params.append(owner_id)
            clauses.append(f"owner_id = ${len(params)}")
        if booking_id is not None:
            params.append(booking_id)
            clauses.append(f"booking_id = ${len(params)}")
        params.append(limit)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        return await self._select(
            EMAIL_LOGS, f"{where}ORDER BY sent_at DESC LIMIT ${len(params)}", *params
        )
