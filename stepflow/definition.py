"""Workflow definitions and the builder used to declare them.

A definition is built once per workflow type and shared read-only by every
execution of that type::

    def build(wf: WorkflowBuilder) -> None:
        wf.step("draft").action(
            "submit_for_review",
            to="under_review",
            condition=lambda ctx: ctx.get("length", 0) >= 50,
        )
        wf.step("under_review").action("approve", to="approved").action(
            "reject", to="draft"
        )
        wf.step("approved")

    approval = define_workflow("document_approval", build)
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidActionError, InvalidStepError, WorkflowDefinitionError

logger = logging.getLogger(__name__)

Predicate = Callable[[Mapping[str, Any]], Any]


def evaluate_predicate(predicate: Predicate, context: Mapping[str, Any]) -> bool:
    """Evaluate ``predicate``; any exception counts as ``False``."""
    try:
        return bool(predicate(context))
    except Exception as e:
        logger.debug(f"Predicate {predicate!r} raised {type(e).__name__}: {e}")
        return False


class ActionDefinition(BaseModel):
    """A named, optionally guarded transition to ``target_step``."""

    name: str
    target_step: str
    guard: Optional[Predicate] = None
    description: Optional[str] = None
    confirmation_required: bool = False

    model_config = ConfigDict(frozen=True)

    def is_available(self, context: Mapping[str, Any]) -> bool:
        if self.guard is None:
            return True
        return evaluate_predicate(self.guard, context)


class StepDefinition(BaseModel):
    """A named state with its outgoing actions and entry conditions."""

    name: str
    description: Optional[str] = None
    requirements: tuple[str, ...] = ()
    actions: tuple[ActionDefinition, ...] = ()
    conditions: tuple[Predicate, ...] = ()
    safe: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def action_names(self) -> list[str]:
        return [a.name for a in self.actions]

    @property
    def is_terminal(self) -> bool:
        return not self.actions

    def find_action(self, name: str) -> Optional[ActionDefinition]:
        return next((a for a in self.actions if a.name == name), None)

    def require_action(self, name: str) -> ActionDefinition:
        action = self.find_action(name)
        if action is None:
            raise InvalidActionError(
                f"Action '{name}' is not defined on step '{self.name}'",
                details={"step": self.name, "action": name},
            )
        return action

    def satisfies_conditions(self, context: Mapping[str, Any]) -> bool:
        """Return ``True`` when every entry condition holds for ``context``."""
        return all(evaluate_predicate(c, context) for c in self.conditions)

    def confirmation_required(self, action_name: str) -> bool:
        action = self.find_action(action_name)
        return action.confirmation_required if action else False


class ContextRequirement(BaseModel):
    """A context key every execution must carry, with the value to fill in."""

    key: str
    default: Any = None

    model_config = ConfigDict(frozen=True)


class DefinitionSummary(BaseModel):
    """Serialisable overview of a definition."""

    name: str
    description: Optional[str] = None
    steps: list[str] = Field(default_factory=list)
    initial_step: Optional[str] = None
    final_steps: list[str] = Field(default_factory=list)
    safe_steps: list[str] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """Immutable step graph of one workflow type.

    ``steps`` keeps declaration order; the first step is the initial step and
    steps without actions are final.
    """

    name: str
    description: Optional[str] = None
    steps: tuple[StepDefinition, ...] = ()
    required_context: tuple[ContextRequirement, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    @property
    def initial_step(self) -> Optional[str]:
        return self.steps[0].name if self.steps else None

    @property
    def final_steps(self) -> list[str]:
        return [s.name for s in self.steps if s.is_terminal]

    @property
    def safe_steps(self) -> list[str]:
        return [s.name for s in self.steps if s.safe]

    @property
    def required_keys(self) -> list[str]:
        return [r.key for r in self.required_context]

    def has_step(self, name: Optional[str]) -> bool:
        return self.find_step(name) is not None

    def find_step(self, name: Optional[str]) -> Optional[StepDefinition]:
        if name is None:
            return None
        return next((s for s in self.steps if s.name == name), None)

    def require_step(self, name: Optional[str]) -> StepDefinition:
        step = self.find_step(name)
        if step is None:
            raise InvalidStepError(
                f"Step '{name}' is not defined in workflow '{self.name}'",
                details={"workflow": self.name, "step": name},
            )
        return step

    def is_final_step(self, name: str) -> bool:
        step = self.find_step(name)
        return step is not None and step.is_terminal

    def can_transition(self, from_step: str, action: str, to_step: str) -> bool:
        step = self.find_step(from_step)
        if step is None:
            return False
        action_def = step.find_action(action)
        return action_def is not None and action_def.target_step == to_step

    def default_for(self, key: str) -> Any:
        for requirement in self.required_context:
            if requirement.key == key:
                return copy.deepcopy(requirement.default)
        return None

    def summary(self) -> DefinitionSummary:
        return DefinitionSummary(
            name=self.name,
            description=self.description,
            steps=self.step_names,
            initial_step=self.initial_step,
            final_steps=self.final_steps,
            safe_steps=self.safe_steps,
        )


class StepBuilder:
    """Collects the declarations made inside one ``step`` block."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._description: Optional[str] = None
        self._requirements: list[str] = []
        self._actions: dict[str, ActionDefinition] = {}
        self._conditions: list[Predicate] = []
        self._safe = False

    def describe(self, text: str) -> StepBuilder:
        self._description = text
        return self

    def requirement(self, text: str) -> StepBuilder:
        """Add a human readable precondition (documentation only)."""
        self._requirements.append(text)
        return self

    def condition(self, predicate: Predicate) -> StepBuilder:
        """Add an entry condition that must hold before leaving this step."""
        if not callable(predicate):
            raise WorkflowDefinitionError(
                f"Condition for step '{self.name}' must be callable"
            )
        self._conditions.append(predicate)
        return self

    def mark_safe(self) -> StepBuilder:
        """Designate this step as a rollback point for recovery."""
        self._safe = True
        return self

    def action(
        self,
        name: str,
        to: str,
        condition: Optional[Predicate] = None,
        description: Optional[str] = None,
        confirmation_required: bool = False,
    ) -> StepBuilder:
        if name in self._actions:
            raise WorkflowDefinitionError(
                f"Action '{name}' is already defined for step '{self.name}'"
            )
        if condition is not None and not callable(condition):
            raise WorkflowDefinitionError(
                f"Guard for action '{name}' on step '{self.name}' must be callable"
            )
        self._actions[name] = ActionDefinition(
            name=name,
            target_step=str(to),
            guard=condition,
            description=description,
            confirmation_required=confirmation_required,
        )
        return self

    def build(self) -> StepDefinition:
        return StepDefinition(
            name=self.name,
            description=self._description,
            requirements=tuple(self._requirements),
            actions=tuple(self._actions.values()),
            conditions=tuple(self._conditions),
            safe=self._safe,
        )


class WorkflowBuilder:
    """Accumulates ``step`` declarations and produces a definition."""

    def __init__(self, name: str, description: Optional[str] = None) -> None:
        if not name:
            raise WorkflowDefinitionError("Workflow name must be a non-empty string")
        self.name = name
        self.description = description
        self._steps: dict[str, StepBuilder] = {}
        self._required: dict[str, ContextRequirement] = {}

    def step(
        self,
        name: str,
        block: Optional[Callable[[StepBuilder], Any]] = None,
        *,
        description: Optional[str] = None,
        safe: bool = False,
    ) -> StepBuilder:
        if name in self._steps:
            raise WorkflowDefinitionError(f"Step '{name}' is already defined")
        builder = StepBuilder(name)
        self._steps[name] = builder
        if description is not None:
            builder.describe(description)
        if safe:
            builder.mark_safe()
        if block is not None:
            block(builder)
        return builder

    def require_context(self, key: str, default: Any = None) -> WorkflowBuilder:
        """Declare a context key that ``auto_repair`` may fill with ``default``."""
        self._required[key] = ContextRequirement(key=key, default=default)
        return self

    def build(self) -> WorkflowDefinition:
        return WorkflowDefinition(
            name=self.name,
            description=self.description,
            steps=tuple(b.build() for b in self._steps.values()),
            required_context=tuple(self._required.values()),
        )


def define_workflow(
    name: str,
    builder_fn: Callable[[WorkflowBuilder], Any],
    description: Optional[str] = None,
) -> WorkflowDefinition:
    """Evaluate ``builder_fn`` against a fresh builder and return the definition."""
    builder = WorkflowBuilder(name, description=description)
    builder_fn(builder)
    definition = builder.build()
    logger.debug(
        f"Defined workflow {name} with steps {definition.step_names}"
    )
    return definition
