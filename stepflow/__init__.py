"""stepflow: declarative step workflows with audited transitions and recovery."""

from .config import StepflowConfig, load_config
from .contracts import (
    ActionResult,
    ActorRef,
    Execution,
    ExecutionStatus,
    SubjectRef,
    TransitionRecord,
)
from .debugging import WorkflowDebugger
from .definition import WorkflowBuilder, WorkflowDefinition, define_workflow
from .engine import WorkflowEngine
from .errors import (
    ContextError,
    RecoveryError,
    TransitionError,
    WorkflowDefinitionError,
    WorkflowError,
    WorkflowExecutionError,
    WorkflowPermissionError,
)
from .persistence import get_repository
from .recovery import WorkflowRecovery
from .registry import REGISTRY, WorkflowRegistry, register_workflow
from .validation import validate_definition

__version__ = "0.1.0"
__all__ = [
    "ActionResult",
    "ActorRef",
    "ContextError",
    "Execution",
    "ExecutionStatus",
    "REGISTRY",
    "RecoveryError",
    "StepflowConfig",
    "SubjectRef",
    "TransitionError",
    "TransitionRecord",
    "WorkflowBuilder",
    "WorkflowDebugger",
    "WorkflowDefinition",
    "WorkflowDefinitionError",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowExecutionError",
    "WorkflowPermissionError",
    "WorkflowRecovery",
    "WorkflowRegistry",
    "define_workflow",
    "get_repository",
    "load_config",
    "register_workflow",
    "validate_definition",
]
