"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import Execution, ExecutionStatus, SubjectRef, utcnow
from ..errors import ConcurrentModificationError
from .models import COLUMNS, ExecutionRow
from .repository import ExecutionRepository

_SELECT = f"SELECT {', '.join(COLUMNS)} FROM executions"


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist executions using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                subject_type TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                current_step TEXT NOT NULL,
                status TEXT NOT NULL,
                context TEXT NOT NULL,
                history TEXT NOT NULL,
                assigned_actor_type TEXT,
                assigned_actor_id TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_subject "
            "ON executions (subject_type, subject_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert(self, row: ExecutionRow) -> None:
        with self._lock:
            self._conn.execute(
                f"INSERT INTO executions ({', '.join(COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in COLUMNS)})",
                (
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
                    row.created_at.isoformat(),
                    row.updated_at.isoformat(),
                ),
            )
            self._conn.commit()

    def _compare_and_swap(self, row: ExecutionRow, expected_version: int) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE executions
                SET workflow_name = ?, subject_type = ?, subject_id = ?,
                    current_step = ?, status = ?, context = ?, history = ?,
                    assigned_actor_type = ?, assigned_actor_id = ?,
                    version = ?, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
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
                    row.updated_at.isoformat(),
                    row.id,
                    expected_version,
                ),
            )
            self._conn.commit()
            return cur.rowcount

    @staticmethod
    def _to_execution(r: sqlite3.Row) -> Execution:
        return ExecutionRow(
            id=r["id"],
            workflow_name=r["workflow_name"],
            subject_type=r["subject_type"],
            subject_id=r["subject_id"],
            current_step=r["current_step"],
            status=r["status"],
            context=json.loads(r["context"]),
            history=json.loads(r["history"]),
            assigned_actor_type=r["assigned_actor_type"],
            assigned_actor_id=r["assigned_actor_id"],
            version=r["version"],
            created_at=datetime.fromisoformat(r["created_at"]),
            updated_at=datetime.fromisoformat(r["updated_at"]),
        ).to_execution()

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: Execution) -> Execution:
        await asyncio.to_thread(self._insert, ExecutionRow.from_execution(execution))
        return execution

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone, f"{_SELECT} WHERE id = ?", execution_id
        )
        return self._to_execution(row) if row else None

    async def save_execution(
        self, execution: Execution, expected_version: int
    ) -> Execution:
        updated = execution.model_copy(
            update={"version": expected_version + 1, "updated_at": utcnow()}
        )
        changed = await asyncio.to_thread(
            self._compare_and_swap, ExecutionRow.from_execution(updated), expected_version
        )
        if changed == 0:
            current = await self.get_execution(execution.id)
            if current is None:
                raise KeyError(execution.id)
            raise ConcurrentModificationError(
                f"Execution {execution.id} was modified concurrently "
                f"(expected version {expected_version}, found {current.version})",
                execution=current,
            )
        return updated

    async def list_executions(
        self,
        workflow_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[Execution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_name is not None:
            clauses.append("workflow_name = ?")
            params.append(workflow_name)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        query = _SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY created_at", *params)
        return [self._to_execution(r) for r in rows]

    async def find_for_subject(self, subject: SubjectRef) -> list[Execution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"{_SELECT} WHERE subject_type = ? AND subject_id = ? ORDER BY created_at",
            subject.type,
            subject.id,
        )
        return [self._to_execution(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
