import pytest

from stepflow.definition import define_workflow
from stepflow.errors import WorkflowDefinitionError
from stepflow.registry import WorkflowRegistry
from stepflow.validation import find_unreachable_steps, validate_definition


def _abc(wf):
    wf.step("a").action("go", to="b")
    wf.step("b")
    wf.step("c")


def test_unreachable_step_is_reported():
    definition = define_workflow("abc", _abc)

    assert validate_definition(definition) == ["Step 'c' is unreachable"]
    assert find_unreachable_steps(definition) == ["c"]


def test_unreachable_step_blocks_registration():
    registry = WorkflowRegistry()

    with pytest.raises(WorkflowDefinitionError) as exc_info:
        registry.register(define_workflow("abc", _abc))

    assert exc_info.value.details["issues"] == ["Step 'c' is unreachable"]
    assert "abc" not in registry


def test_linking_the_step_makes_the_definition_valid():
    def linked(wf):
        wf.step("a").action("go", to="b")
        wf.step("b").action("finish", to="c")
        wf.step("c")

    assert validate_definition(define_workflow("abc", linked)) == []
