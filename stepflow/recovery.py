"""Checkpoints, integrity checks, auto repair and guided recovery.

Every state change made here goes through :meth:`WorkflowEngine.mutate`, so
recovery takes part in the same compare-and-swap discipline as
``perform_action``. Moves that change the current step create a checkpoint of
the prior state inside the same commit and append a ``recovery:<strategy>``
record so the history keeps chaining without gaps.
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .contracts import (
    CHECKPOINTS_KEY,
    SYSTEM_RECOVERY_ACTOR,
    Execution,
    ExecutionStatus,
    TransitionRecord,
    utcnow,
)
from .debugging import WorkflowDebugger
from .definition import WorkflowDefinition
from .engine import WorkflowEngine
from .errors import (
    CheckpointNotFoundError,
    RecoveryError,
    StateCorruptionError,
    WorkflowExecutionError,
)
from .validation import validate_context

logger = logging.getLogger(__name__)

STRATEGIES = ("auto", "rollback", "reset", "retry_last", "manual")
SYSTEM_ACTION_PREFIXES = ("recovery:", "auto_repair:")
CRITICAL_KEYWORDS = ("corrupt", "missing", "broken", "invalid", "not defined", "not found")


class Checkpoint(BaseModel):
    """Deep snapshot of an execution's mutable state."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    label: str
    captured_step: str
    captured_status: ExecutionStatus
    captured_context: Optional[dict[str, Any]] = None
    captured_history: list[TransitionRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "recovery_system"

    model_config = ConfigDict(frozen=True)


class IntegrityReport(BaseModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    severity: str = "none"
    recommendations: list[str] = Field(default_factory=list)


class RepairReport(BaseModel):
    success: bool = True
    repairs: list[str] = Field(default_factory=list)
    remaining_issues: list[str] = Field(default_factory=list)
    execution: Optional[Execution] = None


class RecoveryResult(BaseModel):
    """Outcome of ``recover`` and ``restore_from_checkpoint``."""

    success: bool
    strategy: str
    target_step: Optional[str] = None
    checkpoint_id: Optional[str] = None
    backup_id: Optional[str] = None
    retry_action: Optional[str] = None
    retry_available: Optional[bool] = None
    instructions: list[str] = Field(default_factory=list)
    recovery_plan: Optional[dict[str, Any]] = None
    execution: Optional[Execution] = None


def _capture(execution: Execution, label: str) -> Checkpoint:
    context = {k: v for k, v in execution.context.items() if k != CHECKPOINTS_KEY}
    return Checkpoint(
        label=label,
        captured_step=execution.current_step,
        captured_status=execution.status,
        captured_context=copy.deepcopy(context),
        captured_history=list(execution.history),
    )


def _stored_checkpoints(execution: Execution) -> list[dict[str, Any]]:
    raw = execution.context.get(CHECKPOINTS_KEY) or []
    if not isinstance(raw, list):
        raise StateCorruptionError(
            "Checkpoint storage is corrupted", execution=execution
        )
    return copy.deepcopy(raw)


def _with_checkpoint(
    execution: Execution,
    checkpoint: Checkpoint,
    limit: int,
    context: Optional[dict] = None,
) -> dict[str, Any]:
    """Return ``context`` (default: the execution's) with ``checkpoint`` appended.

    Only the newest ``limit`` checkpoints are kept.
    """
    stored = _stored_checkpoints(execution)
    stored.append(checkpoint.model_dump(mode="json"))
    updated = copy.deepcopy(execution.context if context is None else context)
    updated[CHECKPOINTS_KEY] = stored[-limit:]
    return updated


def _age(created_at: datetime) -> str:
    seconds = int((utcnow() - created_at).total_seconds())
    if seconds < 60:
        return f"{seconds} seconds ago"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


def _severity(issues: list[str]) -> str:
    if not issues:
        return "none"
    lowered = [issue.lower() for issue in issues]
    if any(keyword in issue for issue in lowered for keyword in CRITICAL_KEYWORDS):
        return "critical"
    if len(issues) > 5:
        return "high"
    if len(issues) > 2:
        return "medium"
    return "low"


def _recommendations(issues: list[str]) -> list[str]:
    lowered = " ".join(issues).lower()
    recommendations = []
    if "context" in lowered:
        recommendations.append(
            "Reset context data to a known good state or run auto_repair to "
            "fill required fields"
        )
    if "history" in lowered:
        recommendations.append(
            "Review the step history and restore from a checkpoint if needed"
        )
    if "subject" in lowered:
        recommendations.append("Verify and repair the subject reference")
    if "not defined" in lowered:
        recommendations.append(
            "Run auto_repair to reset the current step to the initial step"
        )
    return recommendations


def _retry_candidate(execution: Execution) -> Optional[TransitionRecord]:
    """The last transition made by a caller rather than by recovery itself."""
    return next(
        (
            record
            for record in reversed(execution.history)
            if not record.action.startswith(SYSTEM_ACTION_PREFIXES)
        ),
        None,
    )


class WorkflowRecovery:
    """Recovery operations for executions managed by ``engine``."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine
        self.settings = engine.config.recovery

    # ------------------------------------------------------------------
    # Checkpoints
    async def create_checkpoint(
        self, execution: Execution | str, label: Optional[str] = None
    ) -> str:
        """Snapshot the execution's state and return the checkpoint id."""
        label = label or f"Checkpoint {utcnow().strftime('%Y%m%d_%H%M%S')}"

        def apply(current: Execution) -> tuple[Optional[Execution], Any]:
            checkpoint = _capture(current, label)
            context = _with_checkpoint(
                current, checkpoint, self.settings.max_checkpoints
            )
            return (
                current.evolve(context=context),
                checkpoint.id,
            )

        saved, checkpoint_id = await self.engine.mutate(
            execution, apply, operation="checkpoint"
        )
        logger.info(f"Checkpoint created: {checkpoint_id} ({label}) on {saved.id}")
        return checkpoint_id

    def load_checkpoints(self, execution: Execution) -> list[Checkpoint]:
        try:
            return [Checkpoint.model_validate(c) for c in _stored_checkpoints(execution)]
        except ValidationError as e:
            raise StateCorruptionError(
                f"Checkpoint data is corrupted: {e}", execution=execution
            ) from e

    def get_checkpoint(self, execution: Execution, checkpoint_id: str) -> Checkpoint:
        for checkpoint in self.load_checkpoints(execution):
            if checkpoint.id == checkpoint_id:
                return checkpoint
        raise CheckpointNotFoundError(
            f"Checkpoint {checkpoint_id} not found", execution=execution
        )

    def list_checkpoints(self, execution: Execution) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "label": c.label,
                "step": c.captured_step,
                "created_at": c.created_at.isoformat(),
                "age": _age(c.created_at),
            }
            for c in self.load_checkpoints(execution)
        ]

    def _restoration_issues(self, checkpoint: Checkpoint) -> list[str]:
        issues = []
        max_age = timedelta(days=self.settings.checkpoint_max_age_days)
        if utcnow() - checkpoint.created_at > max_age:
            issues.append(
                f"Checkpoint is older than {self.settings.checkpoint_max_age_days:g} days"
            )
        if checkpoint.captured_context is None:
            issues.append("Checkpoint has no context data")
        return issues

    async def restore_from_checkpoint(
        self, execution: Execution | str, checkpoint_id: str, force: bool = False
    ) -> RecoveryResult:
        """Overwrite step, status, context and history with a checkpoint's values.

        A backup checkpoint of the current state is written in the same commit
        so the restoration can itself be undone. The live checkpoint list is
        kept.
        """

        def apply(current: Execution) -> tuple[Optional[Execution], Any]:
            checkpoint = self.get_checkpoint(current, checkpoint_id)
            if not force:
                issues = self._restoration_issues(checkpoint)
                if issues:
                    raise RecoveryError(
                        f"Checkpoint validation failed: {', '.join(issues)}",
                        execution=current,
                        details={"checkpoint_id": checkpoint_id, "issues": issues},
                    )
            backup = _capture(current, f"Before restore from {checkpoint_id}")
            context = _with_checkpoint(
                current,
                backup,
                self.settings.max_checkpoints,
                context=checkpoint.captured_context or {}
            )
            restored = current.evolve(
                current_step=checkpoint.captured_step,
                status=checkpoint.captured_status,
                context=context,
                history=list(checkpoint.captured_history),
            )
            return restored, backup.id

        try:
            saved, backup_id = await self.engine.mutate(
                execution, apply, operation="checkpoint restore"
            )
        except WorkflowExecutionError as e:
            logger.error(f"Checkpoint restoration failed: {e}")
            raise RecoveryError(
                f"Failed to restore from checkpoint: {e}",
                execution=e.execution,
                details={"checkpoint_id": checkpoint_id},
            ) from e

        logger.info(f"Restored execution {saved.id} from checkpoint {checkpoint_id}")
        return RecoveryResult(
            success=True,
            strategy="restore",
            target_step=saved.current_step,
            checkpoint_id=checkpoint_id,
            backup_id=backup_id,
            execution=saved,
        )

    # ------------------------------------------------------------------
    # Integrity
    def _context_issues(
        self, execution: Execution, definition: Optional[WorkflowDefinition]
    ) -> list[str]:
        problems = validate_context(execution.context, allow_reserved=True)
        if problems:
            return problems
        if definition is None:
            return []
        return [
            f"Missing required context field: {key}"
            for key in definition.required_keys
            if key not in execution.context
        ]

    def _history_issues(
        self, execution: Execution, definition: Optional[WorkflowDefinition]
    ) -> list[str]:
        history = execution.history
        issues = []
        if definition is not None and history:
            if history[0].from_step != definition.initial_step:
                issues.append("History doesn't start from initial step")
        for previous, record in zip(history, history[1:]):
            if previous.to_step != record.from_step:
                issues.append(
                    f"History gap between steps {previous.to_step} and {record.from_step}"
                )
        return issues

    def _step_issues(
        self, execution: Execution, definition: Optional[WorkflowDefinition]
    ) -> list[str]:
        if definition is None:
            return [f"Workflow definition '{execution.workflow_name}' not found"]
        if not definition.has_step(execution.current_step):
            return [
                f"Current step '{execution.current_step}' is not defined in workflow"
            ]
        return []

    async def _subject_issues(self, execution: Execution) -> list[str]:
        subject = execution.subject
        if not subject.type or not subject.id:
            return ["Missing subject reference"]
        try:
            entity = await self.engine.resolve_subject(subject)
        except Exception as e:
            return [f"Error loading subject: {e}"]
        if entity is None:
            return ["Subject reference is broken"]
        return []

    async def validate_integrity(self, execution: Execution) -> IntegrityReport:
        definition = self.engine.definition_for(execution)
        issues = [
            *self._context_issues(execution, definition),
            *self._history_issues(execution, definition),
            *self._step_issues(execution, definition),
            *await self._subject_issues(execution),
        ]
        return IntegrityReport(
            is_valid=not issues,
            issues=issues,
            severity=_severity(issues),
            recommendations=_recommendations(issues),
        )

    async def auto_repair(self, execution: Execution | str) -> RepairReport:
        """Apply safe fixes: fill declared context defaults, reset an unknown step.

        Nothing is written when there is nothing to repair, so a second run
        returns an empty repair list.
        """

        def apply(current: Execution) -> tuple[Optional[Execution], Any]:
            definition = self._require_definition(current)
            repairs: list[str] = []
            changes: dict[str, Any] = {}

            context = copy.deepcopy(current.context)
            for key in definition.required_keys:
                if key not in context:
                    context[key] = definition.default_for(key)
                    repairs.append(f"Added missing context field: {key}")
            if repairs:
                changes["context"] = context

            if not definition.has_step(current.current_step):
                initial = definition.initial_step
                last = current.last_transition()
                record = TransitionRecord(
                    from_step=last.to_step if last else initial,
                    to_step=initial,
                    action="auto_repair:reset_step",
                    actor=SYSTEM_RECOVERY_ACTOR,
                )
                changes["current_step"] = initial
                changes["history"] = [*current.history, record]
                repairs.append(
                    f"Reset invalid current step '{current.current_step}' to "
                    f"initial step '{initial}'"
                )
                if current.status is ExecutionStatus.COMPLETED:
                    changes["status"] = ExecutionStatus.ACTIVE
                    repairs.append("Reopened completed execution at initial step")

            if not changes:
                return None, repairs
            return current.evolve(**changes), repairs

        saved, repairs = await self.engine.mutate(
            execution, apply, operation="auto repair"
        )
        logger.info(
            f"Auto repairs completed on {saved.id}: {len(repairs)} repairs made"
        )
        report = await self.validate_integrity(saved)
        return RepairReport(
            repairs=repairs, remaining_issues=report.issues, execution=saved
        )

    # ------------------------------------------------------------------
    # Recovery
    def _require_definition(self, execution: Execution) -> WorkflowDefinition:
        definition = self.engine.definition_for(execution)
        if definition is None:
            raise RecoveryError(
                f"Workflow definition '{execution.workflow_name}' not found",
                execution=execution,
            )
        return definition

    def _static_blockers(self, execution: Execution) -> list[str]:
        blockers = []
        if execution.status is ExecutionStatus.COMPLETED:
            blockers.append("Workflow is already completed")
        if validate_context(execution.context, allow_reserved=True):
            blockers.append("Context data appears corrupted")
        if self.engine.definition_for(execution) is None:
            blockers.append(
                f"Workflow definition '{execution.workflow_name}' is missing"
            )
        return blockers

    async def recovery_blockers(self, execution: Execution) -> list[str]:
        """Every reason recovery is impossible right now, not just the first."""
        blockers = self._static_blockers(execution)
        if await self._subject_issues(execution):
            blockers.append("Subject reference cannot be resolved")
        return blockers

    async def can_recover(self, execution: Execution) -> bool:
        return not await self.recovery_blockers(execution)

    def identify_rollback_points(self, execution: Execution) -> list[dict[str, Any]]:
        """Safe steps visited before the current one, nearest first."""
        definition = self.engine.definition_for(execution)
        if definition is None or not execution.history:
            return []
        safe = set(definition.safe_steps)

        visited: list[tuple[str, Optional[datetime]]] = [
            (execution.history[0].from_step, None)
        ]
        visited.extend((r.to_step, r.timestamp) for r in execution.history)

        points = []
        seen = {execution.current_step}
        for steps_back, (step, timestamp) in enumerate(reversed(visited)):
            if step in seen or step not in safe:
                continue
            seen.add(step)
            step_def = definition.find_step(step)
            points.append(
                {
                    "step": step,
                    "timestamp": timestamp.isoformat() if timestamp else None,
                    "steps_back": steps_back,
                    "description": step_def.description or f"Step: {step}",
                }
            )
        return points

    def _retry_guard_holds(
        self, execution: Execution, definition: WorkflowDefinition
    ) -> bool:
        candidate = _retry_candidate(execution)
        if candidate is None:
            return False
        step = definition.find_step(candidate.from_step)
        action = step.find_action(candidate.action) if step else None
        return action is not None and action.is_available(
            copy.deepcopy(execution.context)
        )

    def _plan_move(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        strategy: str,
        target_step: Optional[str],
        force: bool,
    ) -> tuple[str, str]:
        if strategy == "auto":
            if (
                execution.status is ExecutionStatus.FAILED
                and _retry_candidate(execution) is not None
                and (force or self._retry_guard_holds(execution, definition))
            ):
                return "retry_last", _retry_candidate(execution).from_step
            points = self.identify_rollback_points(execution)
            if points:
                return "rollback", points[0]["step"]
            return "reset", definition.initial_step

        if strategy == "rollback":
            points = self.identify_rollback_points(execution)
            if not points:
                raise RecoveryError(
                    "No safe rollback point found", execution=execution
                )
            return "rollback", points[0]["step"]

        if strategy == "reset":
            if not target_step:
                raise RecoveryError("Target step required for reset", execution=execution)
            if not definition.has_step(target_step):
                raise RecoveryError(
                    f"Invalid target step: {target_step}", execution=execution
                )
            return "reset", target_step

        # retry_last
        candidate = _retry_candidate(execution)
        if candidate is None:
            raise RecoveryError("No action history to retry", execution=execution)
        if not force and not self._retry_guard_holds(execution, definition):
            raise RecoveryError(
                f"Action '{candidate.action}' would not be available after "
                f"re-entering '{candidate.from_step}'",
                execution=execution,
                details={"action": candidate.action, "step": candidate.from_step},
            )
        return "retry_last", candidate.from_step

    async def recover(
        self,
        execution: Execution | str,
        strategy: str = "auto",
        target_step: Optional[str] = None,
        force: bool = False,
    ) -> RecoveryResult:
        """Move a stuck or failed execution back to a usable step.

        Raises :class:`RecoveryError` listing every blocker when recovery is
        not possible. ``force`` lets ``retry_last`` re-enter a step even when
        the retried action's guard no longer holds.
        """
        current = await self.engine.refresh(execution)
        logger.info(
            f"Recovery attempt on {current.id}: strategy={strategy}, "
            f"target={target_step}, force={force}"
        )
        if strategy not in STRATEGIES:
            raise RecoveryError(
                f"Unknown recovery strategy: {strategy}", execution=current
            )

        blockers = await self.recovery_blockers(current)
        if blockers:
            raise RecoveryError(
                f"Workflow cannot be recovered: {', '.join(blockers)}",
                execution=current,
                details={"blockers": blockers},
            )

        if strategy == "manual":
            return await self._prepare_manual(current, target_step)

        def apply(fresh: Execution) -> tuple[Optional[Execution], Any]:
            blockers = self._static_blockers(fresh)
            if blockers:
                raise RecoveryError(
                    f"Workflow cannot be recovered: {', '.join(blockers)}",
                    execution=fresh,
                    details={"blockers": blockers},
                )
            definition = self._require_definition(fresh)
            chosen, target = self._plan_move(
                fresh, definition, strategy, target_step, force
            )
            checkpoint = _capture(fresh, f"Before {chosen} to {target}")
            record = TransitionRecord(
                from_step=fresh.current_step,
                to_step=target,
                action=f"recovery:{chosen}",
                actor=SYSTEM_RECOVERY_ACTOR,
            )
            retried = _retry_candidate(fresh) if chosen == "retry_last" else None
            moved = fresh.evolve(
                current_step=target,
                status=ExecutionStatus.ACTIVE,
                context=_with_checkpoint(
                    fresh, checkpoint, self.settings.max_checkpoints
                ),
                history=[*fresh.history, record],
            )
            return moved, (chosen, target, checkpoint.id, retried)

        saved, (chosen, target, checkpoint_id, retried) = await self.engine.mutate(
            current, apply, operation=f"recovery {strategy}"
        )
        logger.info(f"Recovery action on {saved.id}: {chosen} to {target}")

        result = RecoveryResult(
            success=True,
            strategy=chosen,
            target_step=target,
            checkpoint_id=checkpoint_id,
            execution=saved,
        )
        if retried is not None:
            result.retry_action = retried.action
            result.retry_available = retried.action in self.engine.available_actions(
                saved
            )
        return result

    async def _prepare_manual(
        self, execution: Execution, target_step: Optional[str]
    ) -> RecoveryResult:
        checkpoint_id = await self.create_checkpoint(
            execution, "Before manual recovery"
        )
        saved = await self.engine.refresh(execution)
        return RecoveryResult(
            success=True,
            strategy="manual",
            target_step=target_step,
            checkpoint_id=checkpoint_id,
            instructions=[
                "1. Review the current workflow state and context data",
                "2. Identify the root cause of the failure",
                "3. Make necessary corrections to the context or external systems",
                f"4. Consider resetting to step: {target_step}"
                if target_step
                else "4. Choose an appropriate recovery step",
                "5. Create a checkpoint before making changes",
                "6. Test the recovery in a non-production environment if possible",
            ],
            recovery_plan=await self.recovery_plan(saved),
            execution=saved,
        )

    # ------------------------------------------------------------------
    # Planning and diagnostics
    def _can_retry_last(self, execution: Execution) -> bool:
        return (
            execution.status is ExecutionStatus.FAILED
            and _retry_candidate(execution) is not None
        )

    async def recovery_plan(self, execution: Execution) -> dict[str, Any]:
        blockers = await self.recovery_blockers(execution)
        if blockers:
            return {"error": "Cannot generate recovery plan", "blockers": blockers}

        rollback_points = self.identify_rollback_points(execution)
        options = []
        if self._can_retry_last(execution):
            options.append(
                {
                    "strategy": "retry_last",
                    "description": "Retry the last failed action",
                    "risk": "low",
                }
            )
        if rollback_points:
            options.append(
                {
                    "strategy": "rollback",
                    "description": "Rollback to a safe step",
                    "risk": "medium",
                    "options": rollback_points,
                }
            )
        options.append(
            {
                "strategy": "reset",
                "description": "Reset to a specific step",
                "risk": "high",
            }
        )

        if self._can_retry_last(execution):
            recommended = "retry_last"
        elif rollback_points:
            recommended = "rollback"
        else:
            recommended = "manual"

        report = await self.validate_integrity(execution)
        deduction = self.settings.integrity_deduction_per_issue
        return {
            "current_state": self._current_state(execution),
            "recovery_options": options,
            "recommended_action": recommended,
            "rollback_points": rollback_points,
            "data_integrity": {
                "context_valid": not validate_context(
                    execution.context, allow_reserved=True
                ),
                "history_consistent": not self._history_issues(
                    execution, self.engine.definition_for(execution)
                ),
                "references_valid": not await self._subject_issues(execution),
                "overall_score": max(100 - len(report.issues) * deduction, 0),
            },
            "risks": self._risks(execution),
        }

    def _current_state(self, execution: Execution) -> dict[str, Any]:
        return {
            "step": execution.current_step,
            "status": execution.status.value,
            "last_updated": execution.updated_at.isoformat(),
            "context_size": execution.context_size(),
            "history_entries": len(execution.history),
        }

    def _risks(self, execution: Execution) -> list[str]:
        risks = []
        if execution.context_size() > self.settings.large_context_bytes:
            risks.append("Large context data may slow recovery")
        if len(execution.history) > self.settings.long_history_entries:
            risks.append("Long execution history may complicate rollback")
        return risks

    async def export_diagnostics(
        self, execution: Execution, format: str = "json"
    ) -> Any:
        """Collect everything an operator needs to analyse ``execution``.

        ``format`` is ``"json"`` or ``"yaml"`` for a string, ``"dict"`` for the
        raw mapping.
        """
        blockers = await self.recovery_blockers(execution)
        integrity = await self.validate_integrity(execution)
        data = {
            "execution": {
                "id": execution.id,
                "workflow_name": execution.workflow_name,
                "current_step": execution.current_step,
                "status": execution.status.value,
                "context_size": execution.context_size(),
            },
            "recovery_analysis": {
                "can_recover": not blockers,
                "blockers": blockers,
                "recovery_plan": await self.recovery_plan(execution),
            },
            "integrity_check": integrity.model_dump(),
            "available_checkpoints": self.list_checkpoints(execution),
            "debug_info": WorkflowDebugger(self.engine, execution).debug_report(),
            "exported_at": utcnow().isoformat(),
        }
        # normalise datetimes and other values to plain JSON types
        data = json.loads(json.dumps(data, default=str))

        if format == "json":
            return json.dumps(data, indent=2)
        if format == "yaml":
            return yaml.safe_dump(data, sort_keys=False)
        if format == "dict":
            return data
        raise ValueError(f"Unsupported diagnostics format: {format}")


__all__ = [
    "Checkpoint",
    "IntegrityReport",
    "RecoveryResult",
    "RepairReport",
    "WorkflowRecovery",
]
