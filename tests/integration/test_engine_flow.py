"""End-to-end runs through the seeded role pipeline."""

import pytest

from baton.conditions import StaticGitClient
from baton.definitions import load_definitions, seed_definitions
from baton.engine import WorkflowEngine
from baton.errors import ConcurrentUpdateError, InvalidInputError, PreconditionFailedError
from baton.models import StepStatus, Task


async def _engine(store, git=None) -> WorkflowEngine:
    await seed_definitions(store, load_definitions())
    git = git or StaticGitClient("main", status=[" M app.py"])
    return WorkflowEngine(store, git_client_factory=lambda cwd: git, environ={})


async def _drive_role(engine: WorkflowEngine, execution_id: str) -> list[str]:
    names = []
    while True:
        started = await engine.execute_next_step(execution_id)
        if started["status"] == "role_complete":
            return names
        names.append(started["step"]["name"])
        await engine.complete_step(execution_id, started["step"]["id"], duration=60_000)


@pytest.mark.asyncio
async def test_bootstrap_attach_and_full_pipeline(store):
    engine = await _engine(store)
    boot = await engine.bootstrap_workflow(task_data={"name": "Add login", "priority": "High"})
    execution_id = boot["execution"]["id"]
    assert boot["first_step"]["name"] == "gather_requirements"
    assert boot["execution"]["task_id"] is None
    assert boot["execution"]["execution_context"]["bootstrapped"] is True

    started = await engine.execute_next_step(execution_id)
    assert started["step"]["name"] == "gather_requirements"
    done = await engine.complete_step(execution_id, started["step"]["id"])
    assert done["next_step_id"] is not None

    attached = await engine.attach_task(execution_id, {"slug": "TSK-7"})
    task_id = attached["task_id"]
    task = await store.get_task(task_id)
    assert (task.name, task.priority, task.slug) == ("Add login", "High", "TSK-7")
    assert "task_creation_data" not in attached["execution_context"]
    assert all(r.task_id == task_id for r in await store.list_progress(execution_id=execution_id))
    with pytest.raises(InvalidInputError):
        await engine.attach_task(execution_id, {"name": "Again"})

    visited = {"boomerang": ["gather_requirements"] + await _drive_role(engine, execution_id)}
    for role in ("researcher", "architect", "senior-developer", "code-review", "integration-engineer"):
        await engine.transition_role(execution_id, role)
        visited[role] = await _drive_role(engine, execution_id)

    assert visited["boomerang"] == ["gather_requirements", "verify_repository", "delegate_research"]
    assert visited["architect"] == ["review_research", "create_plan", "define_batches"]
    assert sum(len(v) for v in visited.values()) == 14

    metrics = await engine.calculate_progress(execution_id)
    assert metrics["percentage"] == 100
    assert metrics["steps_completed"] == 14
    assert (await store.get_task(task_id)).status == "in-progress"

    result = await engine.complete_execution(execution_id)
    assert result["execution"]["execution_state"]["phase"] == "completed"
    assert result["summary"]["final_role"] == "integration-engineer"
    assert result["summary"]["steps_completed"] == 14
    assert await engine.get_active_executions() == []


@pytest.mark.asyncio
async def test_required_condition_blocks_step(store):
    engine = await _engine(store)
    task = await store.save_task(Task(name="Old", status="cancelled"))
    execution = await engine.create_execution("researcher", task_id=task.id)

    with pytest.raises(PreconditionFailedError) as exc_info:
        await engine.execute_next_step(execution["id"])
    assert exc_info.value.errors == ["Condition 'task_active' failed: Task status 'cancelled' is forbidden"]
    assert await store.list_progress(execution_id=execution["id"]) == []


@pytest.mark.asyncio
async def test_failing_step_spends_recovery_budget(store, make_task):
    engine = await _engine(store)
    task = await make_task()
    execution = await engine.create_execution("senior-developer", task_id=task.id)
    execution_id = execution["id"]

    retries = []
    for _ in range(3):
        started = await engine.execute_next_step(execution_id)
        assert started["step"]["name"] == "implement_batch"
        failed = await engine.fail_step(execution_id, started["step"]["id"], ["tests failed"])
        retries.append(failed["retry"]["can_retry"])
    assert retries == [True, True, False]

    current = await engine.get_execution(execution_id=execution_id)
    assert current["execution_state"]["phase"] == "failed"
    assert current["last_error"]["message"] == "tests failed"

    resumed = await engine.resume_execution(execution_id)
    assert resumed["execution_state"]["phase"] == "in-progress"
    summary = await engine.get_role_progress_summary("senior-developer")
    assert summary["failed_steps"] == 3
    assert summary["success_rate"] == 0


@pytest.mark.asyncio
async def test_dispatch_envelopes(store, make_task):
    engine = await _engine(store)
    task = await make_task()

    created = await engine.dispatch("create_execution", {"role": "architect", "task_id": task.id})
    assert created["success"] is True
    execution_id = created["data"]["id"]

    architect = await store.get_role_by_name("architect")
    create_plan = (await store.list_steps(architect.id))[1]
    validation = await engine.dispatch(
        "validate_step_conditions", {"step_id": create_plan.id, "execution_id": execution_id}
    )
    assert validation["success"] is True
    assert validation["data"]["valid"] is False

    missing = await engine.dispatch("get_execution", {"execution_id": "missing"})
    assert missing["success"] is False
    assert missing["error"]["code"] == "NOT_FOUND"

    ambiguous = await engine.dispatch("get_execution", {})
    assert ambiguous["error"]["code"] == "INVALID_INPUT"

    bad_params = await engine.dispatch("pause_execution", {"execution": execution_id})
    assert bad_params["success"] is False
    assert bad_params["error"]["code"] == "INVALID_INPUT"

    unknown = await engine.dispatch("drop_everything")
    assert unknown["error"]["message"] == "Unknown operation: drop_everything"

    metrics = await engine.dispatch("get_role_metrics")
    assert metrics["data"]["architect"] == {"average_progress": 0, "total_active": 1}


@pytest.mark.asyncio
async def test_subtask_updates_through_engine(store, make_task, make_plan):
    engine = await _engine(store)
    task = await make_task()
    _, (a, b) = await make_plan(task, [("A", "1", "not-started"), ("B", "1", "not-started")])

    with pytest.raises(InvalidInputError):
        await engine.update_subtasks(task.id, subtask_id=a.id, status="completed", updates=[])
    with pytest.raises(InvalidInputError):
        await engine.update_subtasks(task.id, subtask_id=a.id)

    single = await engine.update_subtasks(task.id, subtask_id=a.id, status="completed")
    assert single["batch_status"]["is_complete"] is False

    batch = await engine.update_subtasks(task.id, updates=[{"subtask_id": b.id, "status": "completed"}])
    assert batch["plan_complete"] is True
    assert (await engine.check_batch_status(task.id, "1"))["is_complete"] is True


@pytest.mark.asyncio
async def test_rejected_completion_leaves_attempt_open(store, make_task):
    engine = await _engine(store)
    task = await make_task()
    execution_id = (await engine.create_execution("code-review", task_id=task.id))["id"]
    started = await engine.execute_next_step(execution_id)
    await engine.complete_execution(execution_id)

    with pytest.raises(InvalidInputError):
        await engine.complete_step(execution_id, started["step"]["id"])
    with pytest.raises(InvalidInputError):
        await engine.fail_step(execution_id, started["step"]["id"], ["too late"])
    with pytest.raises(InvalidInputError):
        await engine.execute_next_step(execution_id)

    [attempt] = await store.list_progress(execution_id=execution_id)
    assert attempt.status == StepStatus.IN_PROGRESS
    assert attempt.completed_at is None


@pytest.mark.asyncio
async def test_lost_update_race_rolls_back_completion(store, make_task, monkeypatch):
    engine = await _engine(store)
    task = await make_task()
    execution_id = (await engine.create_execution("code-review", task_id=task.id))["id"]
    started = await engine.execute_next_step(execution_id)

    async def _always_stale(execution):
        raise ConcurrentUpdateError("stale", service="store", operation="update_execution")

    monkeypatch.setattr(store, "update_execution", _always_stale)
    with pytest.raises(ConcurrentUpdateError):
        await engine.complete_step(execution_id, started["step"]["id"])

    [attempt] = await store.list_progress(execution_id=execution_id)
    assert attempt.status == StepStatus.IN_PROGRESS
    assert (await store.get_execution(execution_id)).steps_completed == 0


@pytest.mark.asyncio
async def test_dispatch_turns_malformed_values_into_invalid_input(store, make_task):
    engine = await _engine(store)
    task = await make_task()
    execution_id = (await engine.create_execution("architect", task_id=task.id))["id"]

    progress = await engine.dispatch(
        "update_execution_progress",
        {"execution_id": execution_id, "steps_completed": "abc", "total_steps": 2},
    )
    assert progress["success"] is False
    assert progress["error"]["code"] == "INVALID_INPUT"

    mode = await engine.dispatch("create_execution", {"role": "architect", "execution_mode": "TURBO"})
    assert mode["error"]["code"] == "INVALID_INPUT"

    status = await engine.dispatch(
        "update_subtasks", {"task_id": task.id, "subtask_id": "s-1", "status": "almost-done"}
    )
    assert status["error"]["code"] == "INVALID_INPUT"

    taskless_id = (await engine.create_execution("architect"))["id"]
    attach = await engine.dispatch("attach_task", {"execution_id": taskless_id, "task": {"name": None}})
    assert attach["error"]["code"] == "INVALID_INPUT"
    assert attach["error"]["message"] == "Invalid task data"


@pytest.mark.asyncio
async def test_transition_moves_task_ownership(store, make_task):
    engine = await _engine(store)
    boot = await engine.bootstrap_workflow(task_data={"name": "Add login"})
    execution_id = boot["execution"]["id"]
    attached = await engine.attach_task(execution_id, {"slug": "TSK-9"})
    assert (await store.get_task(attached["task_id"])).owner_role == "boomerang"

    await _drive_role(engine, execution_id)
    moved = await engine.transition_role(execution_id, "researcher")
    assert (await store.get_task(attached["task_id"])).owner_role == "researcher"
    assert moved["execution_context"]["role_transitions"][0]["message"] == "Handoff from boomerang to researcher"
