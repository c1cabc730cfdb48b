"""Execution engine: the runtime state machine for workflow instances."""

from __future__ import annotations

import copy
import inspect
import logging
import time
from typing import Any, Callable, Optional

from .config import StepflowConfig, load_config
from .contracts import (
    LAST_ERROR_KEY,
    ActionResult,
    ActorRef,
    Execution,
    ExecutionStatus,
    SubjectRef,
    TransitionRecord,
    utcnow,
)
from .definition import WorkflowDefinition
from .errors import (
    ConcurrentModificationError,
    InvalidContextError,
    WorkflowDefinitionError,
    WorkflowError,
    WorkflowExecutionError,
)
from .persistence import ExecutionRepository, get_repository
from .registry import REGISTRY, WorkflowRegistry
from .utils.retry import schedule_retry
from .validation import validate_context, validate_transition

logger = logging.getLogger(__name__)

# A mutation receives the freshly read execution and returns the snapshot to
# write (``None`` to skip the write) together with a payload for the caller.
Mutation = Callable[[Execution], tuple[Optional[Execution], Any]]
SubjectResolver = Callable[[SubjectRef], Any]


class WorkflowEngine:
    """Create executions and move them through their workflow definition.

    Every write goes through :meth:`mutate`, which re-reads the execution,
    applies a pure function to the fresh snapshot and commits the result with
    a compare-and-swap on ``version``. A losing writer re-reads and
    re-validates rather than reapplying its original decision.
    """

    def __init__(
        self,
        repository: ExecutionRepository | None = None,
        registry: WorkflowRegistry | None = None,
        config: StepflowConfig | None = None,
        subject_resolver: SubjectResolver | None = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository()
        self.registry = registry or REGISTRY
        self.subject_resolver = subject_resolver

    # ------------------------------------------------------------------
    # Lookups
    def definition_for(self, execution: Execution) -> Optional[WorkflowDefinition]:
        return self.registry.get(execution.workflow_name)

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return await self.repository.get_execution(execution_id)

    async def refresh(self, execution: Execution | str) -> Execution:
        """Return the latest committed snapshot of ``execution``."""
        execution_id = execution.id if isinstance(execution, Execution) else execution
        fresh = await self.repository.get_execution(execution_id)
        if fresh is None:
            raise WorkflowExecutionError(f"Execution {execution_id} not found")
        return fresh

    async def list_executions(
        self,
        workflow_name: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[Execution]:
        return await self.repository.list_executions(
            workflow_name=workflow_name, status=status
        )

    async def executions_for_subject(self, subject: Any) -> list[Execution]:
        return await self.repository.find_for_subject(SubjectRef.coerce(subject))

    async def resolve_subject(self, subject: SubjectRef) -> Any:
        """Load the domain entity behind ``subject`` using the configured resolver.

        Without a resolver every reference is considered resolvable and is
        returned as is. A resolver may be sync or async and signals a broken
        reference by returning ``None`` or raising.
        """
        if self.subject_resolver is None:
            return subject
        result = self.subject_resolver(subject)
        if inspect.isawaitable(result):
            result = await result
        return result

    # ------------------------------------------------------------------
    # Creation
    async def create_execution_for(
        self,
        definition: WorkflowDefinition,
        subject: Any,
        assigned_actor: Any = None,
        initial_context: Optional[dict[str, Any]] = None,
    ) -> Execution:
        registered = self.registry.get(definition.name)
        if registered is None:
            raise WorkflowDefinitionError(
                f"Workflow '{definition.name}' is not registered"
            )
        if registered.initial_step is None:
            raise WorkflowDefinitionError(
                f"Workflow '{definition.name}' has no steps"
            )

        context = dict(initial_context or {})
        problems = validate_context(context)
        if problems:
            raise InvalidContextError("; ".join(problems), details={"issues": problems})

        execution = Execution(
            workflow_name=registered.name,
            subject=SubjectRef.coerce(subject),
            current_step=registered.initial_step,
            context=copy.deepcopy(context),
            assigned_actor=ActorRef.coerce(assigned_actor) if assigned_actor else None,
        )
        stored = await self.repository.create_execution(execution)
        logger.info(
            f"Created execution {stored.id} of {stored.workflow_name} for "
            f"{stored.subject.type}#{stored.subject.id} at {stored.current_step}"
        )
        return stored

    # ------------------------------------------------------------------
    # Queries (pure, run against a snapshot)
    def available_actions(self, execution: Execution) -> list[str]:
        """Actions of the current step whose guard holds, in declaration order."""
        definition = self.definition_for(execution)
        if definition is None:
            return []
        step = definition.find_step(execution.current_step)
        if step is None:
            return []
        # guards get their own copy so a misbehaving one cannot touch the snapshot
        context = copy.deepcopy(execution.context)
        return [a.name for a in step.actions if a.is_available(context)]

    def action_details(self, execution: Execution) -> list[dict[str, Any]]:
        definition = self.definition_for(execution)
        step = definition.find_step(execution.current_step) if definition else None
        if step is None:
            return []
        available = set(self.available_actions(execution))
        return [
            {
                "name": action.name,
                "target_step": action.target_step,
                "description": action.description,
                "confirmation_required": action.confirmation_required,
                "available": action.name in available,
            }
            for action in step.actions
        ]

    def can_transition_to(self, execution: Execution, target_step: str) -> bool:
        definition = self.definition_for(execution)
        step = definition.find_step(execution.current_step) if definition else None
        if step is None:
            return False
        available = set(self.available_actions(execution))
        return any(
            a.target_step == target_step and a.name in available for a in step.actions
        )

    def context_get(self, execution: Execution, key: str, default: Any = None) -> Any:
        return copy.deepcopy(execution.context.get(key, default))

    def history(self, execution: Execution) -> list[TransitionRecord]:
        return list(execution.history)

    # ------------------------------------------------------------------
    # Atomic mutation
    async def mutate(
        self,
        execution: Execution | str,
        fn: Mutation,
        operation: str = "mutation",
        fail_on_error: bool = False,
    ) -> tuple[Execution, Any]:
        """Read, apply ``fn`` and compare-and-swap until one attempt commits.

        Conflicts are retried with backoff up to ``max_conflict_retries`` times
        within ``conflict_timeout`` seconds, then surface as
        :class:`WorkflowExecutionError`. Any other store failure is raised as
        :class:`WorkflowExecutionError`; with ``fail_on_error`` the execution
        is marked failed first.
        """
        settings = self.config.engine
        deadline = time.monotonic() + settings.conflict_timeout
        attempt = 0

        while True:
            current = await self.refresh(execution)
            proposed, payload = fn(current)
            if proposed is None:
                return current, payload

            try:
                saved = await self.repository.save_execution(
                    proposed, expected_version=current.version
                )
                return saved, payload
            except ConcurrentModificationError as e:
                attempt += 1
                if (
                    attempt >= settings.max_conflict_retries
                    or time.monotonic() >= deadline
                ):
                    logger.error(
                        f"{operation} on execution {current.id} gave up after "
                        f"{attempt} conflicting attempts"
                    )
                    raise WorkflowExecutionError(
                        f"Could not commit {operation} on execution {current.id}: "
                        f"{attempt} concurrent modification conflicts",
                        execution=e.execution or current,
                        details={"operation": operation, "attempts": attempt},
                    ) from e
                logger.warning(
                    f"Concurrent modification of execution {current.id} during "
                    f"{operation}; retrying (attempt {attempt})"
                )
                await schedule_retry(
                    attempt,
                    base=settings.retry_backoff_initial,
                    jitter=settings.retry_backoff_jitter,
                )
            except KeyError as e:
                raise WorkflowExecutionError(
                    f"Execution {current.id} disappeared during {operation}",
                    execution=current,
                    details={"operation": operation},
                ) from e
            except WorkflowError:
                raise
            except Exception as e:
                logger.error(
                    f"{operation} on execution {current.id} failed to commit: {e}"
                )
                committed = current
                if fail_on_error:
                    committed = await self._mark_failed(current, operation, e)
                raise WorkflowExecutionError(
                    f"Failed to commit {operation} on execution {current.id}: {e}",
                    execution=committed,
                    details={
                        "operation": operation,
                        "original_error": type(e).__name__,
                    },
                ) from e

    async def _mark_failed(
        self, current: Execution, operation: str, error: Exception
    ) -> Execution:
        """Best effort write of ``status=failed``; returns what is committed."""
        context = copy.deepcopy(current.context)
        context[LAST_ERROR_KEY] = {
            "operation": operation,
            "error_class": type(error).__name__,
            "message": str(error),
            "step": current.current_step,
            "timestamp": utcnow().isoformat(),
        }
        failed = current.evolve(status=ExecutionStatus.FAILED, context=context)
        try:
            return await self.repository.save_execution(
                failed, expected_version=current.version
            )
        except Exception as mark_error:
            logger.error(
                f"Could not mark execution {current.id} as failed: {mark_error}"
            )
            return current

    # ------------------------------------------------------------------
    # Transitions
    async def perform_action(
        self,
        execution: Execution | str,
        action_name: str,
        actor: Any = None,
        additional_context: Optional[dict[str, Any]] = None,
    ) -> ActionResult:
        """Validate ``action_name`` against fresh state and commit it atomically.

        Validation problems come back as a failed :class:`ActionResult` and
        leave the execution untouched. Commit failures raise
        :class:`WorkflowExecutionError` after marking the execution failed.
        """
        additional = dict(additional_context or {})
        problems = validate_context(additional)
        if problems:
            snapshot = execution if isinstance(execution, Execution) else None
            return ActionResult(
                success=False, errors=problems, reason="invalid_context", execution=snapshot
            )
        actor_ref = ActorRef.coerce(actor) if actor is not None else None

        def apply(current: Execution) -> tuple[Optional[Execution], Any]:
            definition = self.definition_for(current)
            if definition is None:
                return None, (
                    [f"Workflow definition '{current.workflow_name}' not found"],
                    "definition_missing",
                )
            errors = validate_transition(
                definition, current, action_name, self.available_actions(current)
            )
            if errors:
                return None, (errors, _rejection_reason(current, action_name, errors))

            step = definition.require_step(current.current_step)
            action = step.require_action(action_name)
            context = copy.deepcopy(current.context)
            context.update(copy.deepcopy(additional))
            record = TransitionRecord(
                from_step=current.current_step,
                to_step=action.target_step,
                action=action_name,
                actor=actor_ref,
            )
            status = (
                ExecutionStatus.COMPLETED
                if definition.is_final_step(action.target_step)
                else current.status
            )
            return (
                current.evolve(
                    current_step=action.target_step,
                    context=context,
                    history=[*current.history, record],
                    status=status,
                    assigned_actor=actor_ref or current.assigned_actor,
                ),
                None,
            )

        result, rejection = await self.mutate(
            execution, apply, operation=f"action {action_name}", fail_on_error=True
        )
        if rejection is not None:
            errors, reason = rejection
            logger.debug(
                f"Rejected {action_name} on execution {result.id}: {'; '.join(errors)}"
            )
            return ActionResult(
                success=False, errors=errors, reason=reason, execution=result
            )

        record = result.last_transition()
        logger.info(
            f"Execution {result.id}: {action_name} moved {record.from_step} -> "
            f"{result.current_step}"
        )
        return ActionResult(success=True, execution=result)

    # ------------------------------------------------------------------
    # Context and status
    async def merge_context(
        self, execution: Execution | str, values: dict[str, Any]
    ) -> Execution:
        """Shallow-merge ``values`` into the execution's context and persist it."""
        problems = validate_context(values)
        if problems:
            raise InvalidContextError(
                "; ".join(problems),
                execution=execution if isinstance(execution, Execution) else None,
                details={"issues": problems},
            )
        additions = copy.deepcopy(dict(values))

        def apply(current: Execution) -> tuple[Optional[Execution], Any]:
            context = copy.deepcopy(current.context)
            context.update(copy.deepcopy(additions))
            return current.evolve(context=context), None

        updated, _ = await self.mutate(execution, apply, operation="context merge")
        return updated

    async def pause(self, execution: Execution | str) -> ActionResult:
        return await self._set_status(
            execution, ExecutionStatus.ACTIVE, ExecutionStatus.PAUSED
        )

    async def resume(self, execution: Execution | str) -> ActionResult:
        return await self._set_status(
            execution, ExecutionStatus.PAUSED, ExecutionStatus.ACTIVE
        )

    async def _set_status(
        self,
        execution: Execution | str,
        expected: ExecutionStatus,
        target: ExecutionStatus,
    ) -> ActionResult:
        def apply(current: Execution) -> tuple[Optional[Execution], Any]:
            if current.status is not expected:
                return None, [
                    f"Cannot move execution from {current.status.value} to "
                    f"{target.value}"
                ]
            return current.evolve(status=target), None

        result, errors = await self.mutate(
            execution, apply, operation=f"status change to {target.value}"
        )
        if errors:
            return ActionResult(
                success=False, errors=errors, reason="invalid_status", execution=result
            )
        logger.info(f"Execution {result.id} is now {target.value}")
        return ActionResult(success=True, execution=result)


def _rejection_reason(execution: Execution, action_name: str, errors: list[str]) -> str:
    if execution.status is not ExecutionStatus.ACTIVE:
        return "not_active"
    if any(f"Action '{action_name}'" in e for e in errors):
        return "action_unavailable"
    return "conditions_unmet"


__all__ = ["WorkflowEngine"]
