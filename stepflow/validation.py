"""Static checks over definitions and runtime checks over executions."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Mapping
from typing import Any, Optional

from .contracts import RESERVED_CONTEXT_KEYS, Execution, ExecutionStatus
from .definition import WorkflowDefinition


def find_unreachable_steps(definition: WorkflowDefinition) -> list[str]:
    """Return declared steps not reachable from the initial step, in order."""
    initial = definition.initial_step
    if initial is None:
        return []

    reachable = {initial}
    queue = deque([initial])
    while queue:
        step = definition.find_step(queue.popleft())
        if step is None:
            continue
        for action in step.actions:
            if action.target_step not in reachable:
                reachable.add(action.target_step)
                queue.append(action.target_step)

    return [name for name in definition.step_names if name not in reachable]


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """Return every problem found in ``definition``; empty means valid."""
    if not definition.steps:
        return ["Workflow must define at least one step"]

    errors: list[str] = []
    declared = set(definition.step_names)
    for step in definition.steps:
        for action in step.actions:
            if action.target_step not in declared:
                errors.append(
                    f"Step '{step.name}' action '{action.name}' targets undefined "
                    f"step '{action.target_step}'"
                )

    for name in find_unreachable_steps(definition):
        errors.append(f"Step '{name}' is unreachable")
    return errors


def validate_execution(
    definition: Optional[WorkflowDefinition], execution: Execution
) -> list[str]:
    if definition is None:
        return [f"Workflow definition '{execution.workflow_name}' not found"]
    if not execution.current_step:
        return ["Current step cannot be empty"]
    if not definition.has_step(execution.current_step):
        return [
            f"Current step '{execution.current_step}' is not defined in workflow"
        ]
    return []


def validate_transition(
    definition: WorkflowDefinition,
    execution: Execution,
    action_name: str,
    available: list[str],
) -> list[str]:
    """Pre-checks for ``perform_action``; ``available`` comes from the engine."""
    errors: list[str] = []

    if execution.status is not ExecutionStatus.ACTIVE:
        errors.append(f"Workflow execution is {execution.status.value}")

    if action_name not in available:
        errors.append(
            f"Action '{action_name}' is not available from step "
            f"'{execution.current_step}'"
        )

    step = definition.find_step(execution.current_step)
    if step is not None and step.conditions:
        if not step.satisfies_conditions(execution.context):
            errors.append(
                f"Step conditions not satisfied for '{execution.current_step}'"
            )
    return errors


def validate_context(values: Any, allow_reserved: bool = False) -> list[str]:
    """Structural checks for context data: a string keyed, JSON serialisable map."""
    if not isinstance(values, Mapping):
        return [f"Context must be a mapping, got {type(values).__name__}"]

    errors: list[str] = []
    for key in values:
        if not isinstance(key, str):
            errors.append(f"Context key {key!r} is not a string")
        elif not allow_reserved and key in RESERVED_CONTEXT_KEYS:
            errors.append(f"Context key '{key}' is reserved")
    try:
        json.dumps(values)
    except (TypeError, ValueError) as e:
        errors.append(f"Context data is corrupted or not serializable: {e}")
    return errors
