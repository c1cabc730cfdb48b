"""Repository abstraction for execution persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import Execution, ExecutionStatus, SubjectRef


class ExecutionRepository(Protocol):
    """Protocol for execution persistence backends.

    ``save_execution`` is the only write path after creation. It must be
    atomic: the stored ``version`` is compared with ``expected_version`` and
    the row is replaced only when they match.
    """

    async def create_execution(self, execution: Execution) -> Execution:
        """Persist a new execution and return the stored snapshot."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def save_execution(
        self, execution: Execution, expected_version: int
    ) -> Execution:
        """Replace the stored execution if its version is ``expected_version``.

        Returns the stored snapshot with ``version`` incremented and
        ``updated_at`` refreshed.

        Raises:
            ConcurrentModificationError: If another writer committed first.
            KeyError: If the execution does not exist.
        """

    async def list_executions(
        self,
        workflow_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[Execution]:
        """Return stored executions, optionally filtered."""

    async def find_for_subject(self, subject: SubjectRef) -> list[Execution]:
        """Return executions governing ``subject``."""
