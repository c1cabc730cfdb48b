"""Flat row model for persisted executions."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import ActorRef, Execution, ExecutionStatus, SubjectRef, TransitionRecord

COLUMNS = (
    "id",
    "workflow_name",
    "subject_type",
    "subject_id",
    "current_step",
    "status",
    "context",
    "history",
    "assigned_actor_type",
    "assigned_actor_id",
    "version",
    "created_at",
    "updated_at",
)


class ExecutionRow(BaseModel):
    """One row/document per execution, store agnostic.

    ``context`` and ``history`` stay JSON-compatible so that every backend can
    round-trip them without losing history order.
    """

    id: str
    workflow_name: str
    subject_type: str
    subject_id: str
    current_step: str
    status: str
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[dict[str, Any]] = Field(default_factory=list)
    assigned_actor_type: Optional[str] = None
    assigned_actor_id: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_execution(cls, execution: Execution) -> "ExecutionRow":
        data = execution.model_dump(mode="json")
        actor = execution.assigned_actor
        return cls(
            id=execution.id,
            workflow_name=execution.workflow_name,
            subject_type=execution.subject.type,
            subject_id=execution.subject.id,
            current_step=execution.current_step,
            status=execution.status.value,
            context=data["context"],
            history=data["history"],
            assigned_actor_type=actor.type if actor else None,
            assigned_actor_id=actor.id if actor else None,
            version=execution.version,
            created_at=execution.created_at,
            updated_at=execution.updated_at,
        )

    def to_execution(self) -> Execution:
        actor = None
        if self.assigned_actor_type is not None and self.assigned_actor_id is not None:
            actor = ActorRef(type=self.assigned_actor_type, id=self.assigned_actor_id)
        return Execution(
            id=self.id,
            workflow_name=self.workflow_name,
            subject=SubjectRef(type=self.subject_type, id=self.subject_id),
            current_step=self.current_step,
            status=ExecutionStatus(self.status),
            context=self.context,
            history=[TransitionRecord.model_validate(h) for h in self.history],
            assigned_actor=actor,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def context_json(self) -> str:
        return json.dumps(self.context)

    def history_json(self) -> str:
        return json.dumps(self.history)
