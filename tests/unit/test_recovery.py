"""Tests for checkpoints, integrity validation, auto repair and recovery."""

import json

import pytest
import yaml

from stepflow.config import EngineConfig, RecoveryConfig, StepflowConfig
from stepflow.contracts import (
    CHECKPOINTS_KEY,
    Execution,
    ExecutionStatus,
    SubjectRef,
    TransitionRecord,
)
from stepflow.definition import define_workflow
from stepflow.engine import WorkflowEngine
from stepflow.errors import CheckpointNotFoundError, RecoveryError
from stepflow.persistence import InMemoryExecutionRepository
from stepflow.recovery import WorkflowRecovery
from stepflow.registry import WorkflowRegistry

EMPLOYEE = SubjectRef(type="Employee", id="7")


def _onboarding(wf):
    wf.require_context("employee_name", default="unknown")
    wf.step("initial_setup", safe=True, description="Beginning of onboarding").action(
        "start_docs", to="documentation_review"
    )
    wf.step("documentation_review", safe=True).action(
        "docs_ok", to="it_provisioning"
    ).action("docs_missing", to="initial_setup")
    wf.step("it_provisioning").action(
        "provisioned", to="final_review", condition=lambda ctx: ctx.get("laptop_ready")
    )
    wf.step("final_review", safe=True).action("complete", to="completed")
    wf.step("completed")


def _linear(wf):
    wf.step("a").action("next", to="b")
    wf.step("b").action("next", to="c")
    wf.step("c")


ONBOARDING = define_workflow("employee_onboarding", _onboarding)
LINEAR = define_workflow("linear", _linear)


def _recovery(**recovery_settings) -> WorkflowRecovery:
    registry = WorkflowRegistry()
    registry.register(ONBOARDING)
    registry.register(LINEAR)
    engine = WorkflowEngine(
        repository=InMemoryExecutionRepository(),
        registry=registry,
        config=StepflowConfig(
            engine=EngineConfig(retry_backoff_initial=0, retry_backoff_jitter=0),
            recovery=RecoveryConfig(**recovery_settings),
        ),
    )
    return WorkflowRecovery(engine)


async def _start(recovery: WorkflowRecovery, *actions: str, **context) -> Execution:
    engine = recovery.engine
    context.setdefault("employee_name", "Ada")
    execution = await engine.create_execution_for(
        ONBOARDING, EMPLOYEE, initial_context=context
    )
    for action in actions:
        result = await engine.perform_action(execution.id, action, actor="hr")
        assert result.success, result.errors
    return await engine.refresh(execution)


async def _force_state(recovery: WorkflowRecovery, execution_id: str, **changes):
    """Write ``changes`` straight to the store, bypassing every check."""
    repo = recovery.engine.repository
    stored = await repo.get_execution(execution_id)
    return await repo.save_execution(
        stored.evolve(**changes), expected_version=stored.version
    )


# ----------------------------------------------------------------------
# checkpoints
@pytest.mark.asyncio
async def test_create_checkpoint_does_not_change_state():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")

    checkpoint_id = await recovery.create_checkpoint(execution, "before docs")

    stored = await recovery.engine.refresh(execution)
    assert stored.current_step == execution.current_step
    assert stored.status == execution.status
    assert stored.history == execution.history
    assert stored.public_context() == execution.public_context()

    [listed] = recovery.list_checkpoints(stored)
    assert listed["id"] == checkpoint_id
    assert listed["label"] == "before docs"
    assert listed["step"] == "documentation_review"
    assert listed["age"].endswith("seconds ago")


@pytest.mark.asyncio
async def test_only_newest_checkpoints_are_kept():
    recovery = _recovery(max_checkpoints=2)
    execution = await _start(recovery)
    ids = [await recovery.create_checkpoint(execution, f"cp {n}") for n in range(3)]

    stored = await recovery.engine.refresh(execution)
    assert [c["id"] for c in recovery.list_checkpoints(stored)] == ids[1:]
    with pytest.raises(CheckpointNotFoundError):
        recovery.get_checkpoint(stored, ids[0])

    await recovery.restore_from_checkpoint(execution.id, ids[2])
    stored = await recovery.engine.refresh(execution)
    assert [c["label"] for c in recovery.list_checkpoints(stored)] == [
        "cp 2",
        f"Before restore from {ids[2]}",
    ]


@pytest.mark.asyncio
async def test_checkpoint_is_independent_of_later_changes():
    recovery = _recovery()
    execution = await _start(recovery, nested={"items": [1]})
    checkpoint_id = await recovery.create_checkpoint(execution)

    await recovery.engine.merge_context(execution, {"nested": {"items": [1, 2]}})
    await recovery.engine.perform_action(execution.id, "start_docs")

    stored = await recovery.engine.refresh(execution)
    checkpoint = recovery.get_checkpoint(stored, checkpoint_id)
    assert checkpoint.captured_step == "initial_setup"
    assert checkpoint.captured_context == {"employee_name": "Ada", "nested": {"items": [1]}}
    assert checkpoint.captured_history == []
    assert CHECKPOINTS_KEY not in checkpoint.captured_context


@pytest.mark.asyncio
async def test_restore_immediately_after_checkpoint_round_trips():
    recovery = _recovery()
    before = await _start(recovery, "start_docs", "docs_ok")

    checkpoint_id = await recovery.create_checkpoint(before)
    result = await recovery.restore_from_checkpoint(before.id, checkpoint_id)

    after = result.execution
    assert result.success
    assert after.current_step == before.current_step
    assert after.status == before.status
    assert after.history == before.history
    assert after.public_context() == before.public_context()


@pytest.mark.asyncio
async def test_restore_rewinds_state_and_keeps_checkpoints():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")
    checkpoint_id = await recovery.create_checkpoint(execution, "docs")

    await recovery.engine.perform_action(execution.id, "docs_ok")
    await recovery.engine.merge_context(execution.id, {"laptop_ready": True})

    result = await recovery.restore_from_checkpoint(execution.id, checkpoint_id)
    restored = result.execution

    assert result.target_step == "documentation_review"
    assert restored.current_step == "documentation_review"
    assert len(restored.history) == 1
    assert "laptop_ready" not in restored.context
    ids = [c["id"] for c in recovery.list_checkpoints(restored)]
    assert ids == [checkpoint_id, result.backup_id]

    # the backup makes the restoration undoable
    undo = await recovery.restore_from_checkpoint(execution.id, result.backup_id)
    assert undo.execution.current_step == "it_provisioning"
    assert undo.execution.context["laptop_ready"] is True


@pytest.mark.asyncio
async def test_restore_unknown_checkpoint():
    recovery = _recovery()
    execution = await _start(recovery)

    with pytest.raises(CheckpointNotFoundError, match="missing"):
        await recovery.restore_from_checkpoint(execution, "missing")


@pytest.mark.asyncio
async def test_stale_checkpoint_requires_force():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")
    checkpoint_id = await recovery.create_checkpoint(execution)

    stored = await recovery.engine.refresh(execution)
    context = stored.context
    context[CHECKPOINTS_KEY][0]["created_at"] = "2020-01-01T00:00:00Z"
    await _force_state(recovery, execution.id, context=context)

    with pytest.raises(RecoveryError, match="older than 7 days"):
        await recovery.restore_from_checkpoint(execution.id, checkpoint_id)

    result = await recovery.restore_from_checkpoint(
        execution.id, checkpoint_id, force=True
    )
    assert result.success


@pytest.mark.asyncio
async def test_checkpoint_without_context_requires_force():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")
    checkpoint_id = await recovery.create_checkpoint(execution)

    stored = await recovery.engine.refresh(execution)
    context = stored.context
    context[CHECKPOINTS_KEY][0]["captured_context"] = None
    await _force_state(recovery, execution.id, context=context)

    with pytest.raises(RecoveryError, match="no context data"):
        await recovery.restore_from_checkpoint(execution.id, checkpoint_id)

    result = await recovery.restore_from_checkpoint(
        execution.id, checkpoint_id, force=True
    )
    assert result.execution.public_context() == {}


# ----------------------------------------------------------------------
# integrity
@pytest.mark.asyncio
async def test_healthy_execution_is_valid():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")

    report = await recovery.validate_integrity(execution)
    assert report.is_valid
    assert report.issues == []
    assert report.severity == "none"
    assert report.recommendations == []


@pytest.mark.asyncio
async def test_unknown_step_is_critical():
    recovery = _recovery()
    execution = await _start(recovery)

    report = await recovery.validate_integrity(execution.evolve(current_step="ghost"))
    assert not report.is_valid
    assert report.issues == ["Current step 'ghost' is not defined in workflow"]
    assert report.severity == "critical"
    assert any("auto_repair" in r for r in report.recommendations)


@pytest.mark.asyncio
async def test_missing_required_context_is_reported():
    recovery = _recovery()
    execution = await _start(recovery)

    report = await recovery.validate_integrity(execution.evolve(context={}))
    assert report.issues == ["Missing required context field: employee_name"]
    assert report.severity == "critical"


@pytest.mark.asyncio
async def test_corrupted_context_is_reported():
    recovery = _recovery()
    execution = await _start(recovery)

    report = await recovery.validate_integrity(
        execution.evolve(context={"employee_name": "Ada", "tags": {"x"}})
    )
    assert len(report.issues) == 1
    assert "corrupted" in report.issues[0]
    assert report.severity == "critical"


async def _self_referencing(recovery: WorkflowRecovery) -> Execution:
    execution = await _start(recovery, "start_docs")
    context = {"employee_name": "Ada"}
    context["self"] = context
    await _force_state(recovery, execution.id, context=context)
    return await recovery.engine.refresh(execution)


@pytest.mark.asyncio
async def test_self_referencing_context_is_critical_and_blocks_recovery():
    recovery = _recovery()
    execution = await _self_referencing(recovery)

    report = await recovery.validate_integrity(execution)
    assert not report.is_valid
    assert report.severity == "critical"
    assert any("Circular reference" in issue for issue in report.issues)

    assert await recovery.recovery_blockers(execution) == [
        "Context data appears corrupted"
    ]
    with pytest.raises(RecoveryError) as exc_info:
        await recovery.recover(execution.id, strategy="rollback")
    assert exc_info.value.details["blockers"] == ["Context data appears corrupted"]


@pytest.mark.asyncio
async def test_history_gaps_scale_severity():
    recovery = _recovery()
    execution = await _start(recovery)

    def record(a, b):
        return TransitionRecord(from_step=a, to_step=b, action="x")

    one_gap = [record("initial_setup", "documentation_review"), record("final_review", "completed")]
    report = await recovery.validate_integrity(
        execution.evolve(history=one_gap, current_step="completed")
    )
    assert report.issues == [
        "History gap between steps documentation_review and final_review"
    ]
    assert report.severity == "low"
    assert any("history" in r for r in report.recommendations)

    three_gaps = [
        record("initial_setup", "a"),
        record("b", "c"),
        record("d", "e"),
        record("f", "completed"),
    ]
    report = await recovery.validate_integrity(
        execution.evolve(history=three_gaps, current_step="completed")
    )
    assert len(report.issues) == 3
    assert report.severity == "medium"

    wrong_start = [record("documentation_review", "it_provisioning")]
    report = await recovery.validate_integrity(
        execution.evolve(history=wrong_start, current_step="it_provisioning")
    )
    assert report.issues == ["History doesn't start from initial step"]


@pytest.mark.asyncio
async def test_subject_resolution_issues():
    recovery = _recovery()
    execution = await _start(recovery)

    recovery.engine.subject_resolver = lambda subject: None
    report = await recovery.validate_integrity(execution)
    assert report.issues == ["Subject reference is broken"]

    def explode(subject):
        raise LookupError("boom")

    recovery.engine.subject_resolver = explode
    report = await recovery.validate_integrity(execution)
    assert report.issues == ["Error loading subject: boom"]

    recovery.engine.subject_resolver = None
    report = await recovery.validate_integrity(
        execution.evolve(subject=SubjectRef(type="Employee", id=""))
    )
    assert report.issues == ["Missing subject reference"]


# ----------------------------------------------------------------------
# auto repair
@pytest.mark.asyncio
async def test_auto_repair_fixes_and_is_idempotent():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")
    await _force_state(recovery, execution.id, current_step="ghost", context={})

    first = await recovery.auto_repair(execution.id)
    assert first.repairs == [
        "Added missing context field: employee_name",
        "Reset invalid current step 'ghost' to initial step 'initial_setup'",
    ]
    assert first.remaining_issues == []
    repaired = first.execution
    assert repaired.current_step == "initial_setup"
    assert repaired.context == {"employee_name": "unknown"}
    last = repaired.last_transition()
    assert last.action == "auto_repair:reset_step"
    assert last.from_step == "documentation_review"
    assert (await recovery.validate_integrity(repaired)).is_valid

    second = await recovery.auto_repair(execution.id)
    assert second.repairs == []
    assert second.execution.version == repaired.version


@pytest.mark.asyncio
async def test_auto_repair_reopens_completed_execution_on_unknown_step():
    recovery = _recovery()
    execution = await _start(recovery)
    await _force_state(
        recovery, execution.id, current_step="ghost", status=ExecutionStatus.COMPLETED
    )

    report = await recovery.auto_repair(execution.id)
    assert report.execution.status is ExecutionStatus.ACTIVE
    assert "Reopened completed execution at initial step" in report.repairs


# ----------------------------------------------------------------------
# recover
@pytest.mark.asyncio
async def test_recover_lists_every_blocker():
    recovery = _recovery()
    execution = await _start(recovery)
    await _force_state(recovery, execution.id, status=ExecutionStatus.COMPLETED)
    recovery.engine.subject_resolver = lambda subject: None

    with pytest.raises(RecoveryError) as exc_info:
        await recovery.recover(execution.id)

    assert exc_info.value.details["blockers"] == [
        "Workflow is already completed",
        "Subject reference cannot be resolved",
    ]
    assert not await recovery.can_recover(await recovery.engine.refresh(execution))


@pytest.mark.asyncio
async def test_recover_unknown_strategy():
    recovery = _recovery()
    execution = await _start(recovery)
    with pytest.raises(RecoveryError, match="Unknown recovery strategy"):
        await recovery.recover(execution, strategy="teleport")


@pytest.mark.asyncio
async def test_auto_retries_last_action_of_failed_execution():
    recovery = _recovery()
    execution = await _start(
        recovery, "start_docs", "docs_ok", "provisioned", laptop_ready=True
    )
    await _force_state(recovery, execution.id, status=ExecutionStatus.FAILED)

    result = await recovery.recover(execution.id)

    moved = result.execution
    assert result.strategy == "retry_last"
    assert result.target_step == "it_provisioning"
    assert result.retry_action == "provisioned"
    assert result.retry_available is True
    assert moved.current_step == "it_provisioning"
    assert moved.status is ExecutionStatus.ACTIVE
    last = moved.last_transition()
    assert last.action == "recovery:retry_last"
    assert last.from_step == "final_review"
    assert last.actor.id == "recovery"
    assert [c["id"] for c in recovery.list_checkpoints(moved)] == [result.checkpoint_id]
    assert (await recovery.validate_integrity(moved)).is_valid


@pytest.mark.asyncio
async def test_retry_last_reevaluates_guard():
    recovery = _recovery()
    execution = await _start(
        recovery, "start_docs", "docs_ok", "provisioned", laptop_ready=True
    )
    await recovery.engine.merge_context(execution.id, {"laptop_ready": False})
    await _force_state(recovery, execution.id, status=ExecutionStatus.FAILED)

    with pytest.raises(RecoveryError, match="would not be available"):
        await recovery.recover(execution.id, strategy="retry_last")

    # auto falls back to the nearest safe step instead
    result = await recovery.recover(execution.id)
    assert result.strategy == "rollback"
    assert result.target_step == "documentation_review"


@pytest.mark.asyncio
async def test_forced_retry_last_reports_unavailable_action():
    recovery = _recovery()
    execution = await _start(
        recovery, "start_docs", "docs_ok", "provisioned", laptop_ready=True
    )
    await recovery.engine.merge_context(execution.id, {"laptop_ready": False})

    result = await recovery.recover(execution.id, strategy="retry_last", force=True)
    assert result.execution.current_step == "it_provisioning"
    assert result.retry_available is False


@pytest.mark.asyncio
async def test_auto_rolls_back_active_execution_to_safe_step():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs", "docs_ok")

    assert [p["step"] for p in recovery.identify_rollback_points(execution)] == [
        "documentation_review",
        "initial_setup",
    ]
    result = await recovery.recover(execution)

    assert result.strategy == "rollback"
    assert result.execution.current_step == "documentation_review"
    assert result.execution.last_transition().action == "recovery:rollback"


@pytest.mark.asyncio
async def test_auto_resets_when_no_safe_step_exists():
    recovery = _recovery()
    execution = await recovery.engine.create_execution_for(LINEAR, EMPLOYEE)
    await recovery.engine.perform_action(execution, "next")

    result = await recovery.recover(execution)
    assert result.strategy == "reset"
    assert result.execution.current_step == "a"

    with pytest.raises(RecoveryError, match="No safe rollback point"):
        await recovery.recover(execution, strategy="rollback")


@pytest.mark.asyncio
async def test_reset_requires_valid_target():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs", "docs_ok")

    with pytest.raises(RecoveryError, match="Target step required"):
        await recovery.recover(execution, strategy="reset")
    with pytest.raises(RecoveryError, match="Invalid target step: nowhere"):
        await recovery.recover(execution, strategy="reset", target_step="nowhere")

    result = await recovery.recover(
        execution, strategy="reset", target_step="initial_setup"
    )
    assert result.execution.current_step == "initial_setup"
    assert recovery.get_checkpoint(result.execution, result.checkpoint_id).captured_step == (
        "it_provisioning"
    )


@pytest.mark.asyncio
async def test_manual_recovery_only_checkpoints():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")

    result = await recovery.recover(execution, strategy="manual", target_step="initial_setup")

    assert result.strategy == "manual"
    assert len(result.instructions) == 6
    assert "initial_setup" in result.instructions[3]
    assert result.execution.current_step == "documentation_review"
    assert len(result.execution.history) == 1
    assert result.recovery_plan["recommended_action"] == "rollback"
    assert [c["id"] for c in recovery.list_checkpoints(result.execution)] == [
        result.checkpoint_id
    ]


# ----------------------------------------------------------------------
# planning and diagnostics
@pytest.mark.asyncio
async def test_recovery_plan():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs", "docs_ok")
    failed = await _force_state(recovery, execution.id, status=ExecutionStatus.FAILED)

    plan = await recovery.recovery_plan(failed)
    assert plan["recommended_action"] == "retry_last"
    assert [o["strategy"] for o in plan["recovery_options"]] == [
        "retry_last",
        "rollback",
        "reset",
    ]
    assert plan["current_state"]["step"] == "it_provisioning"
    assert plan["data_integrity"]["overall_score"] == 100
    assert plan["risks"] == []

    completed = await _force_state(
        recovery, execution.id, status=ExecutionStatus.COMPLETED
    )
    assert (await recovery.recovery_plan(completed)) == {
        "error": "Cannot generate recovery plan",
        "blockers": ["Workflow is already completed"],
    }


@pytest.mark.asyncio
async def test_export_diagnostics_formats():
    recovery = _recovery()
    execution = await _start(recovery, "start_docs")
    await recovery.create_checkpoint(execution)
    execution = await recovery.engine.refresh(execution)

    data = json.loads(await recovery.export_diagnostics(execution))
    assert data["execution"]["id"] == execution.id
    assert data["recovery_analysis"]["can_recover"] is True
    assert data["integrity_check"]["is_valid"] is True
    assert len(data["available_checkpoints"]) == 1
    assert data["debug_info"]["execution_summary"]["current_step"] == "documentation_review"

    as_yaml = yaml.safe_load(await recovery.export_diagnostics(execution, format="yaml"))
    assert as_yaml["execution"]["id"] == execution.id

    as_dict = await recovery.export_diagnostics(execution, format="dict")
    assert as_dict["execution"]["status"] == "active"

    with pytest.raises(ValueError):
        await recovery.export_diagnostics(execution, format="xml")


@pytest.mark.asyncio
async def test_export_diagnostics_with_self_referencing_context():
    recovery = _recovery()
    execution = await _self_referencing(recovery)

    data = await recovery.export_diagnostics(execution, format="dict")
    assert data["execution"]["context_size"] == -1
    assert data["recovery_analysis"]["can_recover"] is False
    assert data["recovery_analysis"]["blockers"] == ["Context data appears corrupted"]
    assert data["integrity_check"]["severity"] == "critical"
    assert data["debug_info"]["context_analysis"]["size_estimate"] == -1

    as_json = json.loads(await recovery.export_diagnostics(execution))
    assert as_json["execution"]["id"] == execution.id
