"""Command line interface for inspecting and repairing stepflow executions."""

from __future__ import annotations

import asyncio
import importlib
import json
from typing import Optional

import typer

from stepflow.contracts import Execution, ExecutionStatus
from stepflow.definition import WorkflowDefinition
from stepflow.engine import WorkflowEngine
from stepflow.errors import WorkflowDefinitionError, WorkflowError
from stepflow.persistence import get_repository
from stepflow.recovery import WorkflowRecovery
from stepflow.registry import REGISTRY
from stepflow.validation import validate_definition

app = typer.Typer(help="CLI for stepflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for workflow definitions")
execution_app = typer.Typer(help="Commands for workflow executions")
recovery_app = typer.Typer(help="Commands for checkpoints and recovery")

app.add_typer(definition_app, name="definition")
app.add_typer(execution_app, name="execution")
app.add_typer(recovery_app, name="recovery")

ModuleOption = typer.Option(
    None,
    "--module",
    "-m",
    help="Import this module and register the workflow definitions it declares",
)


@app.callback()
def main() -> None:
    """stepflow CLI entry point."""
    pass


def _definitions_in(module_name: str) -> list[WorkflowDefinition]:
    module = importlib.import_module(module_name)
    return [
        value for value in vars(module).values() if isinstance(value, WorkflowDefinition)
    ]


def _load_modules(modules: Optional[list[str]]) -> None:
    """Import ``modules`` and register every module level definition."""
    for module_name in modules or []:
        try:
            definitions = _definitions_in(module_name)
            for definition in definitions:
                if REGISTRY.get(definition.name) is not definition:
                    REGISTRY.register(definition, replace=True)
        except ImportError as exc:
            typer.secho(f"Cannot import {module_name}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        except WorkflowDefinitionError as exc:
            typer.secho(f"Invalid workflow in {module_name}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)


def _engine() -> WorkflowEngine:
    return WorkflowEngine(repository=get_repository())


def _require_execution(engine: WorkflowEngine, execution_id: str) -> Execution:
    execution = asyncio.run(engine.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    return execution


# ----------------------------------------------------------------------
# definition
@definition_app.command("list")
def definition_list(modules: Optional[list[str]] = ModuleOption) -> None:
    """
    List registered workflow definitions.

    Example:
        stepflow definition list --module myapp.workflows
        # Output: document_approval    draft -> approved, rejected
    """
    _load_modules(modules)
    summaries = REGISTRY.summaries()
    if not summaries:
        typer.echo("No workflow definitions registered")
        return
    for summary in summaries:
        finals = ", ".join(summary.final_steps) or "(none)"
        typer.echo(f"{summary.name}\t{summary.initial_step} -> {finals}")
        typer.echo(f"  Steps: {', '.join(summary.steps)}")
        if summary.safe_steps:
            typer.echo(f"  Safe steps: {', '.join(summary.safe_steps)}")


@definition_app.command("validate")
def definition_validate(modules: list[str] = typer.Option(..., "--module", "-m")) -> None:
    """
    Validate the workflow definitions declared in one or more modules.

    Exits with code 1 when any definition has issues.

    Example:
        stepflow definition validate --module myapp.workflows
        # Output: document_approval: OK
    """
    failed = False
    for module_name in modules:
        try:
            definitions = _definitions_in(module_name)
        except ImportError as exc:
            typer.secho(f"Cannot import {module_name}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        except WorkflowDefinitionError as exc:
            typer.secho(f"{module_name}: {exc}", fg=typer.colors.RED)
            failed = True
            continue

        if not definitions:
            typer.echo(f"{module_name}: no workflow definitions found")
        for definition in definitions:
            issues = validate_definition(definition)
            if not issues:
                typer.echo(f"{definition.name}: OK")
                continue
            failed = True
            typer.secho(f"{definition.name}: {len(issues)} issue(s)", fg=typer.colors.RED)
            for issue in issues:
                typer.echo(f"  - {issue}")

    if failed:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# execution
@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Only this workflow"),
    status: Optional[str] = typer.Option(None, help="Only this status"),
) -> None:
    """
    List executions with their current step and status.

    Example:
        stepflow execution list --status failed
        # Output: 3f2a...    document_approval    under_review    failed
    """
    try:
        status_filter = ExecutionStatus(status) if status else None
    except ValueError:
        typer.secho(f"Unknown status: {status}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    executions = asyncio.run(
        get_repository().list_executions(workflow_name=workflow, status=status_filter)
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_name}\t"
            f"{execution.current_step}\t{execution.status.value}"
        )


@execution_app.command("show")
def execution_show(
    execution_id: str, modules: Optional[list[str]] = ModuleOption
) -> None:
    """
    Show one execution: step, status, subject, context and available actions.

    Example:
        stepflow execution show 3f2a... --module myapp.workflows
    """
    _load_modules(modules)
    engine = _engine()
    execution = _require_execution(engine, execution_id)
    typer.echo(
        f"Execution {execution.id}: {execution.workflow_name} "
        f"at {execution.current_step} ({execution.status.value})"
    )
    typer.echo(f"Subject: {execution.subject.type}#{execution.subject.id}")
    if execution.assigned_actor:
        typer.echo(
            f"Assigned to: {execution.assigned_actor.type}#{execution.assigned_actor.id}"
        )
    context = execution.public_context()
    if context:
        typer.echo(f"Context: {json.dumps(context, default=str)}")
    if engine.definition_for(execution) is not None:
        actions = engine.available_actions(execution)
        typer.echo(f"Available actions: {', '.join(actions) or '(none)'}")


@execution_app.command("history")
def execution_history(execution_id: str) -> None:
    """Print the transition history of an execution, oldest first."""
    execution = _require_execution(_engine(), execution_id)
    if not execution.history:
        typer.echo("No transitions recorded")
        return
    for record in execution.history:
        actor = f" by {record.actor.type}#{record.actor.id}" if record.actor else ""
        typer.echo(
            f"{record.timestamp.isoformat()}  {record.from_step} -> "
            f"{record.to_step} [{record.action}]{actor}"
        )


# ----------------------------------------------------------------------
# recovery
@recovery_app.command("integrity")
def recovery_integrity(
    execution_id: str, modules: Optional[list[str]] = ModuleOption
) -> None:
    """
    Check an execution's integrity and print issues and recommendations.

    Exits with code 1 when issues are found.
    """
    _load_modules(modules)
    engine = _engine()
    execution = _require_execution(engine, execution_id)
    report = asyncio.run(WorkflowRecovery(engine).validate_integrity(execution))
    if report.is_valid:
        typer.echo("Integrity OK")
        return
    typer.secho(
        f"{len(report.issues)} issue(s), severity {report.severity}",
        fg=typer.colors.RED,
    )
    for issue in report.issues:
        typer.echo(f"  - {issue}")
    for recommendation in report.recommendations:
        typer.echo(f"  * {recommendation}")
    raise typer.Exit(code=1)


@recovery_app.command("checkpoints")
def recovery_checkpoints(execution_id: str) -> None:
    """List the checkpoints stored on an execution."""
    engine = _engine()
    execution = _require_execution(engine, execution_id)
    checkpoints = WorkflowRecovery(engine).list_checkpoints(execution)
    if not checkpoints:
        typer.echo("No checkpoints found")
        return
    for checkpoint in checkpoints:
        typer.echo(
            f"{checkpoint['id']}\t{checkpoint['step']}\t{checkpoint['age']}\t"
            f"{checkpoint['label']}"
        )


@recovery_app.command("diagnostics")
def recovery_diagnostics(
    execution_id: str,
    format: str = typer.Option("json", help="json or yaml"),
    modules: Optional[list[str]] = ModuleOption,
) -> None:
    """Export recovery diagnostics for an execution."""
    if format not in ("json", "yaml"):
        typer.secho(f"Unsupported format: {format}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _load_modules(modules)
    engine = _engine()
    execution = _require_execution(engine, execution_id)
    typer.echo(
        asyncio.run(WorkflowRecovery(engine).export_diagnostics(execution, format=format))
    )


@recovery_app.command("repair")
def recovery_repair(
    execution_id: str, modules: Optional[list[str]] = ModuleOption
) -> None:
    """
    Apply safe automatic repairs to an execution.

    Example:
        stepflow recovery repair 3f2a... --module myapp.workflows
        # Output: Reset invalid current step 'ghost' to initial step 'draft'
    """
    _load_modules(modules)
    engine = _engine()
    execution = _require_execution(engine, execution_id)
    try:
        report = asyncio.run(WorkflowRecovery(engine).auto_repair(execution))
    except WorkflowError as exc:
        typer.secho(f"Repair failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not report.repairs:
        typer.echo("Nothing to repair")
    for repair in report.repairs:
        typer.echo(repair)
    for issue in report.remaining_issues:
        typer.secho(f"Remaining issue: {issue}", fg=typer.colors.YELLOW)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
