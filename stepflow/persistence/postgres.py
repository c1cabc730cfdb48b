"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..contracts import Execution, ExecutionStatus, SubjectRef, utcnow
from ..errors import ConcurrentModificationError
from .models import COLUMNS, ExecutionRow
from .repository import ExecutionRepository

_SELECT = f"SELECT {', '.join(COLUMNS)} FROM stepflow_executions"


class PostgresExecutionRepository(ExecutionRepository):
    """Persist executions using PostgreSQL."""

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
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stepflow_executions (
                id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                subject_type TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                current_step TEXT NOT NULL,
                status TEXT NOT NULL,
                context JSONB NOT NULL,
                history JSONB NOT NULL,
                assigned_actor_type TEXT,
                assigned_actor_id TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_stepflow_executions_subject
            ON stepflow_executions (subject_type, subject_id)
            """
        )

    @staticmethod
    def _to_execution(r: asyncpg.Record) -> Execution:
        context = r["context"]
        history = r["history"]
        return ExecutionRow(
            id=r["id"],
            workflow_name=r["workflow_name"],
            subject_type=r["subject_type"],
            subject_id=r["subject_id"],
            current_step=r["current_step"],
            status=r["status"],
            context=json.loads(context) if isinstance(context, str) else context,
            history=json.loads(history) if isinstance(history, str) else history,
            assigned_actor_type=r["assigned_actor_type"],
            assigned_actor_id=r["assigned_actor_id"],
            version=r["version"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        ).to_execution()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> Execution:
        row = ExecutionRow.from_execution(execution)
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO stepflow_executions ({', '.join(COLUMNS)}) VALUES "
                "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                row.id,
                row.workflow_name,
                row.subject_type,
                row.subject_id,
                row.current_step,
                row.status,
                row.context_json(),
                row.history_json(),
                row.assigned_actor_type,
                row.assigned_actor_id,
                row.version,
                row.created_at,
                row.updated_at,
            )
        finally:
            await conn.close()
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"{_SELECT} WHERE id = $1", execution_id)
        finally:
            await conn.close()
        return self._to_execution(row) if row else None

    async def save_execution(
        self, execution: Execution, expected_version: int
    ) -> Execution:
        updated = execution.model_copy(
            update={"version": expected_version + 1, "updated_at": utcnow()}
        )
        row = ExecutionRow.from_execution(updated)
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE stepflow_executions
                SET workflow_name = $1, subject_type = $2, subject_id = $3,
                    current_step = $4, status = $5, context = $6, history = $7,
                    assigned_actor_type = $8, assigned_actor_id = $9,
                    version = $10, updated_at = $11
                WHERE id = $12 AND version = $13
                """,
                row.workflow_name,
                row.subject_type,
                row.subject_id,
                row.current_step,
                row.status,
                row.context_json(),
                row.history_json(),
                row.assigned_actor_type,
                row.assigned_actor_id,
                row.version,
                row.updated_at,
                row.id,
                expected_version,
            )
            # asyncpg returns the command tag, e.g. "UPDATE 1"
            if result.split()[-1] == "0":
                current = await conn.fetchrow(
                    "SELECT version FROM stepflow_executions WHERE id = $1", row.id
                )
                if current is None:
                    raise KeyError(execution.id)
                raise ConcurrentModificationError(
                    f"Execution {execution.id} was modified concurrently "
                    f"(expected version {expected_version}, found {current['version']})"
                )
        finally:
            await conn.close()
        return updated

    async def list_executions(
        self,
        workflow_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[Execution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_name is not None:
            params.append(workflow_name)
            clauses.append(f"workflow_name = ${len(params)}")
        if status is not None:
            params.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        query = _SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY created_at", *params)
        finally:
            await conn.close()
        return [self._to_execution(r) for r in rows]

    async def find_for_subject(self, subject: SubjectRef) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"{_SELECT} WHERE subject_type = $1 AND subject_id = $2 ORDER BY created_at",
                subject.type,
                subject.id,
            )
        finally:
            await conn.close()
        return [self._to_execution(r) for r in rows]
