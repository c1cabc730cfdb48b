"""Example: a document approval workflow from draft to decision."""

import asyncio

from stepflow import WorkflowEngine, define_workflow, load_config, register_workflow


def build_approval(wf):
    wf.require_context("title", default="Untitled")
    wf.step("draft", safe=True, description="Author is writing").action(
        "submit_for_review",
        to="under_review",
        condition=lambda ctx: ctx.get("length", 0) >= 50,
        description="Send the document to a reviewer",
    )
    wf.step("under_review").action("approve", to="approved").action(
        "reject", to="draft"
    ).action("decline", to="rejected", confirmation_required=True)
    wf.step("approved")
    wf.step("rejected")


DOCUMENT_APPROVAL = register_workflow(
    define_workflow("document_approval", build_approval, description="Review a document")
)


async def main():
    """Walk one document through review."""
    engine = WorkflowEngine()

    execution = await engine.create_execution_for(
        DOCUMENT_APPROVAL,
        {"type": "Document", "id": "doc-1"},
        initial_context={"title": "Quarterly report", "length": 10},
    )
    print(f"📄 Created execution {execution.id} at {execution.current_step}")
    print(f"🔒 Available actions: {engine.available_actions(execution)}")

    execution = await engine.merge_context(execution, {"length": 120})
    print(f"🔓 Available actions: {engine.available_actions(execution)}")

    for action, actor in [
        ("submit_for_review", "author"),
        ("reject", "reviewer"),
        ("submit_for_review", "author"),
        ("approve", "reviewer"),
    ]:
        result = await engine.perform_action(execution, action, actor=actor)
        result.raise_for_errors()
        print(f"➡️  {actor} performed {action}: now at {result.execution.current_step}")

    execution = await engine.refresh(execution)
    print(f"✅ Finished with status {execution.status.value}")
    for record in engine.history(execution):
        print(f"   {record.from_step} -> {record.to_step} [{record.action}]")


if __name__ == "__main__":
    load_config().setup_logging()
    asyncio.run(main())
