"""Example: checkpoints, integrity checks and recovery of a failed execution."""

import asyncio

from stepflow import ExecutionStatus, WorkflowDebugger, WorkflowEngine, WorkflowRecovery
from stepflow import define_workflow, load_config, register_workflow


def build_onboarding(wf):
    wf.require_context("employee_name", default="unknown")
    wf.step("initial_setup", safe=True).action("start_docs", to="documentation_review")
    wf.step("documentation_review", safe=True).action("docs_ok", to="it_provisioning")
    wf.step("it_provisioning").action(
        "provisioned", to="final_review", condition=lambda ctx: ctx.get("laptop_ready")
    )
    wf.step("final_review").action("complete", to="completed")
    wf.step("completed")


ONBOARDING = register_workflow(define_workflow("employee_onboarding", build_onboarding))


async def main():
    engine = WorkflowEngine()
    recovery = WorkflowRecovery(engine)

    execution = await engine.create_execution_for(
        ONBOARDING,
        {"type": "Employee", "id": "emp-7"},
        initial_context={"employee_name": "Ada"},
    )
    for action in ("start_docs", "docs_ok"):
        await engine.perform_action(execution, action, actor="hr")

    checkpoint_id = await recovery.create_checkpoint(execution, "before provisioning")
    print(f"📌 Checkpoint {checkpoint_id}")

    # Simulate an outage that left the execution failed.
    stored = await engine.refresh(execution)
    await engine.repository.save_execution(
        stored.evolve(status=ExecutionStatus.FAILED), expected_version=stored.version
    )

    plan = await recovery.recovery_plan(await engine.refresh(execution))
    print(f"🩺 Recommended recovery: {plan['recommended_action']}")

    result = await recovery.recover(execution)
    print(
        f"🔁 Recovered with {result.strategy} to {result.target_step} "
        f"(status {result.execution.status.value})"
    )

    report = await recovery.validate_integrity(result.execution)
    print(f"🔍 Integrity valid: {report.is_valid}")

    debugger = WorkflowDebugger(engine, result.execution)
    for suggestion in debugger.suggest_next_actions():
        print(f"💡 Next: {suggestion['action']} -> {suggestion['target_step']}")


if __name__ == "__main__":
    load_config().setup_logging()
    asyncio.run(main())
