"""Error taxonomy for stepflow workflows."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel

if TYPE_CHECKING:
    from .contracts import Execution


def _json_safe(obj: Any) -> Any:
    """Convert ``obj`` into something ``json.dumps`` accepts."""
    if isinstance(obj, dict):
        return {str(k): _json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in obj]
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    return str(obj)


class WorkflowError(Exception):
    """Base class for all workflow errors.

    Carries the execution it relates to (if any) plus free-form ``context`` and
    ``details`` mappings so callers can log or serialise the failure.
    """

    def __init__(
        self,
        message: str,
        execution: Optional["Execution"] = None,
        context: Optional[dict[str, Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.execution = execution
        self.context = context or {}
        self.details = details or {}

    @property
    def execution_id(self) -> Optional[str]:
        return self.execution.id if self.execution is not None else None

    @property
    def current_step(self) -> Optional[str]:
        return self.execution.current_step if self.execution is not None else None

    @property
    def workflow_name(self) -> Optional[str]:
        return self.execution.workflow_name if self.execution is not None else None

    @property
    def retryable(self) -> bool:
        """Whether the failure may go away on retry."""
        return not isinstance(self, (WorkflowDefinitionError, WorkflowPermissionError))

    @property
    def severity(self) -> str:
        if isinstance(self, (WorkflowDefinitionError, RecoveryError)):
            return "critical"
        if isinstance(self, (TransitionError, ContextError)):
            return "high"
        if isinstance(self, WorkflowExecutionError):
            return "medium"
        return "low"

    def belongs_to(self, execution: "Execution") -> bool:
        return self.execution is not None and self.execution.id == execution.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_class": type(self).__name__,
            "message": self.message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "execution_id": self.execution_id,
            "current_step": self.current_step,
            "workflow_name": self.workflow_name,
            "severity": self.severity,
            "retryable": self.retryable,
            "context": _json_safe(self.context),
            "details": _json_safe(self.details),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# Definition problems -------------------------------------------------------
class WorkflowDefinitionError(WorkflowError):
    """The workflow definition itself is malformed."""


class InvalidStepError(WorkflowDefinitionError):
    """A step name does not exist in the definition."""


class InvalidActionError(WorkflowDefinitionError):
    """An action name does not exist on the step."""


# Transition problems -------------------------------------------------------
class TransitionError(WorkflowError):
    """An action was attempted that is not currently allowed."""


class ConditionNotMetError(TransitionError):
    """Entry conditions of the current step do not hold."""


class InvalidTransitionError(TransitionError):
    """The action is not available from the current step."""


# Context problems ----------------------------------------------------------
class ContextError(WorkflowError):
    """Context data fails structural validation."""


class InvalidContextError(ContextError):
    """Context data cannot be serialised or uses a reserved key."""


# Authorization -------------------------------------------------------------
class WorkflowPermissionError(WorkflowError):
    """The actor is not allowed to perform the action."""


# Recovery ------------------------------------------------------------------
class RecoveryError(WorkflowError):
    """Recovery could not be carried out."""


class CheckpointNotFoundError(RecoveryError):
    """No checkpoint with the requested id exists."""


class StateCorruptionError(RecoveryError):
    """Persisted state is inconsistent beyond automatic repair."""


# Runtime / commit problems -------------------------------------------------
class WorkflowExecutionError(WorkflowError):
    """A validated mutation failed to commit."""


class ConcurrentModificationError(WorkflowExecutionError):
    """Another writer committed first; re-read and try again."""


class ConfigurationError(WorkflowError):
    """Invalid or missing configuration."""


__all__ = [
    "WorkflowError",
    "WorkflowDefinitionError",
    "InvalidStepError",
    "InvalidActionError",
    "TransitionError",
    "ConditionNotMetError",
    "InvalidTransitionError",
    "ContextError",
    "InvalidContextError",
    "WorkflowPermissionError",
    "RecoveryError",
    "CheckpointNotFoundError",
    "StateCorruptionError",
    "WorkflowExecutionError",
    "ConcurrentModificationError",
    "ConfigurationError",
]
