"""Core value contracts for stepflow executions."""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ConditionNotMetError,
    InvalidContextError,
    InvalidTransitionError,
    TransitionError,
    WorkflowDefinitionError,
    WorkflowError,
)

CHECKPOINTS_KEY = "_checkpoints"
LAST_ERROR_KEY = "_last_error"
RESERVED_CONTEXT_KEYS = frozenset({CHECKPOINTS_KEY, LAST_ERROR_KEY})

# ActionResult.reason -> error raised by ActionResult.raise_for_errors
REJECTION_ERRORS: dict[str, type[WorkflowError]] = {
    "conditions_unmet": ConditionNotMetError,
    "action_unavailable": InvalidTransitionError,
    "invalid_context": InvalidContextError,
    "definition_missing": WorkflowDefinitionError,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class SubjectRef(BaseModel):
    """Opaque reference to the domain entity a workflow governs."""

    type: str
    id: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def coerce(cls, value: Any) -> "SubjectRef":
        if isinstance(value, cls):
            return value
        if isinstance(value, SubjectRef):
            return cls(type=value.type, id=value.id)
        if isinstance(value, Mapping):
            return cls(type=str(value["type"]), id=str(value["id"]))
        if getattr(value, "id", None) is not None:
            return cls(type=type(value).__name__, id=str(value.id))
        raise TypeError(f"Cannot build a subject reference from {value!r}")

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.type}#{self.id}"


class ActorRef(SubjectRef):
    """Opaque reference to whoever performed or owns an action."""

    @classmethod
    def coerce(cls, value: Any) -> "ActorRef":
        if isinstance(value, str):
            return cls(type="user", id=value)
        return super().coerce(value)


SYSTEM_RECOVERY_ACTOR = ActorRef(type="system", id="recovery")


class TransitionRecord(BaseModel):
    """One committed transition in an execution's history."""

    from_step: str
    to_step: str
    action: str
    actor: Optional[ActorRef] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class Execution(BaseModel):
    """Value snapshot of one workflow instance bound to a subject.

    Snapshots are never mutated in place; the engine produces a new value and
    writes it with a version check.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    subject: SubjectRef
    current_step: str
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[TransitionRecord] = Field(default_factory=list)
    assigned_actor: Optional[ActorRef] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    def context_value(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)

    def public_context(self) -> dict[str, Any]:
        """Context without the engine's reserved bookkeeping keys."""
        return {k: v for k, v in self.context.items() if k not in RESERVED_CONTEXT_KEYS}

    def context_size(self) -> int:
        """Serialised size of the context in bytes, or -1 when it cannot be serialised."""
        try:
            return len(json.dumps(self.context, default=str).encode())
        except (TypeError, ValueError):
            return -1

    def last_transition(self) -> Optional[TransitionRecord]:
        return self.history[-1] if self.history else None

    def evolve(self, **changes: Any) -> "Execution":
        """Return a deep copy with ``changes`` applied."""
        return self.model_copy(update=changes, deep=True)


class ActionResult(BaseModel):
    """Outcome of ``perform_action`` and other operator actions."""

    success: bool
    errors: list[str] = Field(default_factory=list)
    reason: Optional[str] = None
    execution: Optional[Execution] = None

    def raise_for_errors(self) -> None:
        """Raise the error matching ``reason`` when the action failed."""
        if not self.success:
            error_class = REJECTION_ERRORS.get(self.reason or "", TransitionError)
            raise error_class(
                "; ".join(self.errors) or "Action failed",
                execution=self.execution,
                details={"reason": self.reason},
            )


__all__ = [
    "CHECKPOINTS_KEY",
    "LAST_ERROR_KEY",
    "REJECTION_ERRORS",
    "RESERVED_CONTEXT_KEYS",
    "SYSTEM_RECOVERY_ACTOR",
    "ActionResult",
    "ActorRef",
    "Execution",
    "ExecutionStatus",
    "SubjectRef",
    "TransitionRecord",
    "utcnow",
]
