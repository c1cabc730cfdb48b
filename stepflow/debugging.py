"""Read-only inspection helpers for a single execution."""

from __future__ import annotations

import copy
from collections import Counter, deque
from datetime import timedelta
from typing import Any, Optional

from .contracts import Execution, ExecutionStatus, utcnow
from .definition import WorkflowDefinition
from .engine import WorkflowEngine
from .errors import WorkflowDefinitionError
from .validation import validate_context, validate_execution


def _children(value: Any) -> Optional[list[Any]]:
    if isinstance(value, dict):
        return list(value.values())
    if isinstance(value, list):
        return value
    return None


# The walkers below carry the ids of the containers on the current path so a
# self-referencing context stops at the repeated container.
def _nesting_depth(value: Any, depth: int = 0, path: frozenset = frozenset()) -> int:
    children = _children(value)
    if children is None or id(value) in path:
        return depth
    path = path | {id(value)}
    return max((_nesting_depth(v, depth + 1, path) for v in children), default=depth)


def _leaf_types(value: Any, counts: Counter, path: frozenset = frozenset()) -> Counter:
    children = _children(value)
    if children is None:
        counts[type(value).__name__] += 1
    elif id(value) not in path:
        for v in children:
            _leaf_types(v, counts, path | {id(value)})
    return counts


def _count(value: Any, predicate, path: frozenset = frozenset()) -> int:
    children = _children(value)
    if children is None or id(value) in path:
        return 0
    path = path | {id(value)}
    return sum(1 for v in children if predicate(v)) + sum(
        _count(v, predicate, path) for v in children
    )


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


class WorkflowDebugger:
    """Build reports about ``execution`` without changing it."""

    def __init__(self, engine: WorkflowEngine, execution: Execution) -> None:
        self.engine = engine
        self.execution = execution

    @property
    def definition(self) -> Optional[WorkflowDefinition]:
        return self.engine.definition_for(self.execution)

    # ------------------------------------------------------------------
    def debug_report(self) -> dict[str, Any]:
        return {
            "execution_summary": self._summary(),
            "current_state": self._current_state(),
            "available_actions": self._available_actions(),
            "context_analysis": self._context_analysis(),
            "validation_status": self._validation_status(),
            "history_analysis": self._history_analysis(),
            "potential_issues": self.potential_issues(),
        }

    def _summary(self) -> dict[str, Any]:
        e = self.execution
        return {
            "id": e.id,
            "workflow_name": e.workflow_name,
            "subject": f"{e.subject.type}#{e.subject.id}",
            "current_step": e.current_step,
            "status": e.status.value,
            "started_at": e.created_at.isoformat(),
            "last_updated": e.updated_at.isoformat(),
            "total_transitions": len(e.history),
        }

    def _current_state(self) -> dict[str, Any]:
        definition = self.definition
        step = definition.find_step(self.execution.current_step) if definition else None
        return {
            "step_name": self.execution.current_step,
            "description": step.description if step else None,
            "requirements": list(step.requirements) if step else [],
            "available_actions": len(self.engine.available_actions(self.execution)),
            "is_final_step": step.is_terminal if step else False,
            "is_safe_step": step.safe if step else False,
        }

    def _available_actions(self) -> list[dict[str, Any]]:
        return [
            {
                "action": detail["name"],
                "target_step": detail["target_step"],
                "description": detail["description"],
                "requires_confirmation": detail["confirmation_required"],
            }
            for detail in self.engine.action_details(self.execution)
            if detail["available"]
        ]

    def _context_analysis(self) -> dict[str, Any]:
        context = self.execution.public_context()
        return {
            "total_keys": len(context),
            "nested_levels": _nesting_depth(context),
            "data_types": dict(_leaf_types(context, Counter())),
            "size_estimate": self.execution.context_size(),
            "null_values": _count(context, lambda v: v is None),
            "empty_collections": _count(
                context, lambda v: isinstance(v, (dict, list)) and not v
            ),
        }

    def validate_state(self) -> list[str]:
        definition = self.definition
        issues = validate_execution(definition, self.execution)
        issues.extend(validate_context(self.execution.context, allow_reserved=True))
        if definition is not None:
            issues.extend(
                f"Missing required context key: {key}"
                for key in definition.required_keys
                if key not in self.execution.context
            )
        return issues

    def _validation_status(self) -> dict[str, Any]:
        issues = self.validate_state()
        return {"is_valid": not issues, "issue_count": len(issues), "issues": issues}

    def _history_analysis(self) -> dict[str, Any]:
        history = self.execution.history
        seen: set[str] = set()
        backtracking = 0
        for record in history:
            if record.to_step in seen:
                backtracking += 1
            seen.add(record.to_step)
        actors = {(r.actor.type, r.actor.id) for r in history if r.actor is not None}
        return {
            "total_transitions": len(history),
            "unique_actors": len(actors),
            "step_frequency": dict(Counter(r.to_step for r in history)),
            "action_frequency": dict(Counter(r.action for r in history)),
            "backtracking_instances": backtracking,
        }

    def potential_issues(self) -> list[str]:
        issues = []
        settings = self.engine.config.recovery
        if utcnow() - self.execution.updated_at > timedelta(
            hours=settings.stale_after_hours
        ):
            issues.append(
                "Workflow execution hasn't been updated in over "
                f"{settings.stale_after_hours:g} hours"
            )
        size = self.execution.context_size()
        if size > settings.large_context_bytes:
            issues.append(f"Context data is unusually large ({size} bytes)")
        if self._history_analysis()["backtracking_instances"] > len(
            self.definition.steps if self.definition else ()
        ):
            issues.append("Potential loop detected in execution history")
        if self.engine.available_actions(self.execution) == [] and not (
            self.definition and self.definition.is_final_step(self.execution.current_step)
        ):
            issues.append("No actions are currently available from a non-final step")
        return issues

    # ------------------------------------------------------------------
    def execution_trace(self) -> list[dict[str, Any]]:
        trace = []
        previous_time = self.execution.created_at
        for number, record in enumerate(self.execution.history, start=1):
            trace.append(
                {
                    "step_number": number,
                    "from_step": record.from_step,
                    "to_step": record.to_step,
                    "action": record.action,
                    "actor": f"{record.actor.type}#{record.actor.id}"
                    if record.actor
                    else None,
                    "timestamp": record.timestamp.isoformat(),
                    "duration": _format_duration(
                        max((record.timestamp - previous_time).total_seconds(), 0.0)
                    ),
                }
            )
            previous_time = record.timestamp
        return trace

    def suggest_next_actions(self) -> list[dict[str, Any]]:
        definition = self.definition
        step = definition.find_step(self.execution.current_step) if definition else None
        conditions_met = (
            step.satisfies_conditions(copy.deepcopy(self.execution.context))
            if step
            else False
        )
        return [
            {
                "action": detail["action"],
                "target_step": detail["target_step"],
                "description": detail["description"],
                "requires_confirmation": detail["requires_confirmation"],
                "condition_met": conditions_met,
                "completes_workflow": definition.is_final_step(detail["target_step"]),
            }
            for detail in self._available_actions()
        ]

    def simulate_action(
        self, action_name: str, test_context: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """Predict the outcome of ``action_name`` with ``test_context`` merged in."""
        definition = self.definition
        try:
            if definition is None:
                raise WorkflowDefinitionError(
                    f"Workflow definition '{self.execution.workflow_name}' not found"
                )
            step = definition.require_step(self.execution.current_step)
            action = step.require_action(action_name)
        except WorkflowDefinitionError as e:
            return {"action": action_name, "would_succeed": False, "error": e.message}

        test_context = dict(test_context or {})
        context = copy.deepcopy(self.execution.context)
        context.update(copy.deepcopy(test_context))

        details = []
        guard_ok = action.is_available(context)
        if not guard_ok:
            details.append("Action guard is not satisfied")
        conditions_ok = step.satisfies_conditions(context)
        if not conditions_ok:
            details.append(f"Step conditions not satisfied for '{step.name}'")
        active = self.execution.status is ExecutionStatus.ACTIVE
        if not active:
            details.append(f"Workflow execution is {self.execution.status.value}")

        warnings = [
            f"Context key '{key}' would be overwritten"
            for key in test_context
            if key in self.execution.context and self.execution.context[key] != test_context[key]
        ]
        context_problems = validate_context(test_context)
        details.extend(context_problems)
        if action.confirmation_required:
            warnings.append("Action requires confirmation")

        return {
            "action": action_name,
            "target_step": action.target_step,
            "would_succeed": guard_ok and conditions_ok and active and not context_problems,
            "validation_details": details,
            "completes_workflow": definition.is_final_step(action.target_step),
            "warnings": warnings,
        }

    def analyze_workflow_graph(self) -> dict[str, Any]:
        definition = self.definition
        if definition is None:
            return {"error": f"Workflow definition '{self.execution.workflow_name}' not found"}

        graph = {
            s.name: [a.target_step for a in s.actions] for s in definition.steps
        }
        reachable = _reachable(graph, self.execution.current_step)
        finals = set(definition.final_steps)
        dead_ends = [
            name
            for name in definition.step_names
            if name not in finals and not (_reachable(graph, name) & finals)
        ]
        return {
            "reachable_steps": [n for n in definition.step_names if n in reachable],
            "unreachable_steps": [
                n for n in definition.step_names if n not in reachable
            ],
            "cycles": _cycles(graph),
            "dead_ends": dead_ends,
            "final_states": definition.final_steps,
        }


def _reachable(graph: dict[str, list[str]], start: str) -> set[str]:
    if start not in graph:
        return set()
    seen = {start}
    queue = deque([start])
    while queue:
        for target in graph.get(queue.popleft(), []):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def _cycles(graph: dict[str, list[str]]) -> list[list[str]]:
    """Elementary cycles found by depth-first search, one per back edge."""
    cycles: list[list[str]] = []
    state: dict[str, int] = {}
    path: list[str] = []

    def visit(node: str) -> None:
        state[node] = 1
        path.append(node)
        for target in graph.get(node, []):
            if state.get(target) == 1:
                cycles.append(path[path.index(target):] + [target])
            elif target not in state and target in graph:
                visit(target)
        path.pop()
        state[node] = 2

    for node in graph:
        if node not in state:
            visit(node)
    return cycles


__all__ = ["WorkflowDebugger"]
