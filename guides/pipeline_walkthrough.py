"""Walk a task through the built-in role pipeline with baton."""

import asyncio

from baton import WorkflowEngine, load_definitions, seed_definitions
from baton.conditions import StaticGitClient
from baton.persistence import InMemoryWorkflowStore


async def drive_role(engine: WorkflowEngine, execution_id: str) -> None:
    while True:
        started = await engine.execute_next_step(execution_id)
        if started["status"] == "role_complete":
            return
        step = started["step"]
        print(f"  ▶ {step['sequence_number']}. {step['name']}")
        result = await engine.complete_step(execution_id, step["id"], duration=5 * 60 * 1000)
        print(f"    {result['metrics']['percentage']}% ({result['metrics']['estimated_completion']})")


async def bootstrap_example():
    """Start without a task, then let the first step create it."""
    print("🚀 Bootstrapped pipeline")

    store = InMemoryWorkflowStore()
    await seed_definitions(store, load_definitions())
    # a fixed git answer keeps the example independent of the working copy
    engine = WorkflowEngine(store, git_client_factory=lambda cwd: StaticGitClient("main"))

    boot = await engine.bootstrap_workflow(task_data={"name": "Add login", "priority": "High"})
    execution_id = boot["execution"]["id"]

    first = await engine.execute_next_step(execution_id)
    await engine.complete_step(execution_id, first["step"]["id"])
    execution = await engine.attach_task(execution_id, {"slug": "TSK-1"})
    print(f"✅ Task {execution['task_id']} attached")

    print("boomerang")
    await drive_role(engine, execution_id)
    for role in ("researcher", "architect", "senior-developer", "code-review", "integration-engineer"):
        await engine.transition_role(execution_id, role)
        print(role)
        await drive_role(engine, execution_id)

    result = await engine.complete_execution(execution_id)
    summary = result["summary"]
    print(f"✅ Completed {summary['steps_completed']} steps in {summary['total_duration']}")


async def recovery_example():
    """Failed steps spend the execution's recovery budget."""
    print("\n🔁 Recovery budget")

    store = InMemoryWorkflowStore()
    await seed_definitions(store, load_definitions())
    engine = WorkflowEngine(store)

    boot = await engine.bootstrap_workflow()
    execution_id = boot["execution"]["id"]
    while True:
        started = await engine.execute_next_step(execution_id)
        failed = await engine.fail_step(execution_id, started["step"]["id"], ["service unavailable"])
        retry = failed["retry"]
        print(f"  attempt {retry['retry_count']}/{retry['max_retries']} can_retry={retry['can_retry']}")
        if not retry["can_retry"]:
            break

    execution = await engine.get_execution(execution_id=execution_id)
    print(f"❌ Execution is {execution['execution_state']['phase']}")


async def main():
    await bootstrap_example()
    await recovery_example()


if __name__ == "__main__":
    asyncio.run(main())
