"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from ..contracts import Execution, ExecutionStatus, SubjectRef, utcnow
from ..errors import ConcurrentModificationError
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store executions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Execution {execution.id} already exists")
            stored = execution.model_copy(deep=True)
            self._executions[execution.id] = stored
            return stored.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        stored = self._executions.get(execution_id)
        return stored.model_copy(deep=True) if stored else None

    async def save_execution(
        self, execution: Execution, expected_version: int
    ) -> Execution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise KeyError(execution.id)
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    f"Execution {execution.id} was modified concurrently "
                    f"(expected version {expected_version}, found {stored.version})",
                    execution=stored,
                )
            updated = execution.model_copy(
                update={"version": expected_version + 1, "updated_at": utcnow()},
                deep=True,
            )
            self._executions[execution.id] = updated
            return updated.model_copy(deep=True)

    async def list_executions(
        self,
        workflow_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[Execution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (workflow_name is None or e.workflow_name == workflow_name)
            and (status is None or e.status == status)
        ]

    async def find_for_subject(self, subject: SubjectRef) -> list[Execution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.subject == subject
        ]
