"""Explicit registry of workflow definitions."""

from __future__ import annotations

import logging
from typing import Optional

from .definition import DefinitionSummary, WorkflowDefinition
from .errors import WorkflowDefinitionError
from .validation import validate_definition

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Maps workflow names to their definitions.

    Definitions are validated on registration so that a broken step graph
    fails at process start rather than when the first execution hits it.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}

    def register(
        self, definition: WorkflowDefinition, replace: bool = False
    ) -> WorkflowDefinition:
        issues = validate_definition(definition)
        if issues:
            raise WorkflowDefinitionError(
                f"Workflow '{definition.name}' is invalid: {'; '.join(issues)}",
                details={"issues": issues},
            )

        existing = self._definitions.get(definition.name)
        if existing is not None and existing is not definition and not replace:
            raise WorkflowDefinitionError(
                f"Workflow '{definition.name}' is already registered"
            )

        self._definitions[definition.name] = definition
        logger.info(
            f"Registered workflow {definition.name} ({len(definition.steps)} steps)"
        )
        return definition

    def get(self, name: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(name)

    def require(self, name: str) -> WorkflowDefinition:
        definition = self.get(name)
        if definition is None:
            raise WorkflowDefinitionError(f"Workflow '{name}' not found")
        return definition

    def exists(self, name: str) -> bool:
        return name in self._definitions

    def names(self) -> list[str]:
        return list(self._definitions)

    def all(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def summaries(self) -> list[DefinitionSummary]:
        return [d.summary() for d in self._definitions.values()]

    def clear(self) -> None:
        self._definitions.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


# Process-wide registry. Modules that declare workflows call
# ``register_workflow`` at import time.
REGISTRY = WorkflowRegistry()


def register_workflow(
    definition: WorkflowDefinition, replace: bool = False
) -> WorkflowDefinition:
    """Add ``definition`` to ``REGISTRY``."""
    return REGISTRY.register(definition, replace=replace)


__all__ = ["REGISTRY", "WorkflowRegistry", "register_workflow"]
