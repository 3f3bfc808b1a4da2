import pytest

from baton.config import ExecutionConfig
from baton.engine import (
    ExecutionStateMachine,
    StepProgressTracker,
    VALID_TRANSITIONS,
    validate_phase_transition,
)
from baton.errors import (
    ConcurrentUpdateError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    RecoverableExecutionError,
)
from baton.models import ExecutionMode, ExecutionPhase

P = ExecutionPhase


async def _setup(store, make_role, make_task, **machine_kwargs):
    role, steps = await make_role("architect", ["review_research", "create_plan", "define_batches"])
    task = await make_task()
    machine = ExecutionStateMachine(store, **machine_kwargs)
    execution = await machine.create_execution(role.id, task_id=task.id)
    return machine, role, steps, task, execution


@pytest.mark.asyncio
async def test_create_execution_points_at_first_step(store, make_role, make_task):
    machine, role, steps, task, execution = await _setup(store, make_role, make_task)

    assert execution.phase == P.INITIALIZED
    assert execution.current_role_id == role.id
    assert execution.current_step_id == steps[0].id
    assert execution.execution_state.current_step.name == "review_research"
    assert execution.total_steps == 3
    assert execution.steps_completed == 0
    assert execution.execution_mode == ExecutionMode.GUIDED
    assert execution.max_recovery_attempts == 3
    assert execution.is_active


@pytest.mark.asyncio
async def test_create_execution_by_role_name_and_mode(store, make_role):
    await make_role("researcher", ["investigate"])
    machine = ExecutionStateMachine(store)
    execution = await machine.create_execution("researcher", execution_mode="AUTOMATED")
    assert execution.task_id is None
    assert execution.execution_mode == ExecutionMode.AUTOMATED

    with pytest.raises(InvalidInputError):
        await machine.create_execution("researcher", execution_mode="TURBO")
    with pytest.raises(NotFoundError):
        await machine.create_execution("nobody")
    with pytest.raises(NotFoundError):
        await machine.create_execution("researcher", task_id="missing-task")


@pytest.mark.asyncio
async def test_context_size_is_bounded(store, make_role):
    await make_role("researcher", ["investigate"])
    machine = ExecutionStateMachine(store, config=ExecutionConfig(max_context_bytes=64))
    with pytest.raises(InvalidInputError):
        await machine.create_execution("researcher", execution_context={"notes": "x" * 100})


@pytest.mark.asyncio
async def test_recovery_budget(store, make_role, make_task):
    """Two retries are allowed; the third error exhausts the budget."""
    machine, *_, execution = await _setup(store, make_role, make_task)
    await machine.resume_execution(execution.id)

    decisions = [
        await machine.handle_execution_error(execution.id, RecoverableExecutionError("flaky"))
        for _ in range(3)
    ]
    assert [d.can_retry for d in decisions] == [True, True, False]
    assert [d.retry_count for d in decisions] == [1, 2, 3]
    assert all(d.max_retries == 3 for d in decisions)

    stored = await machine.get_execution(execution.id)
    assert stored.recovery_attempts == 3
    assert stored.phase == P.FAILED
    assert stored.last_error.message == "flaky"
    assert stored.last_error.code == "RECOVERABLE_EXECUTION_ERROR"


@pytest.mark.parametrize("budget", [1, 2, 5])
@pytest.mark.asyncio
async def test_can_retry_iff_attempts_below_budget(store, make_role, budget):
    await make_role("researcher", ["investigate"])
    machine = ExecutionStateMachine(store, config=ExecutionConfig(max_recovery_attempts=budget))
    execution = await machine.create_execution("researcher")
    for attempt in range(1, budget + 1):
        decision = await machine.handle_execution_error(execution.id, "boom")
        assert decision.can_retry == (attempt < budget), f"attempt {attempt} of {budget}"


@pytest.mark.asyncio
async def test_failed_execution_can_resume(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    for _ in range(3):
        await machine.handle_execution_error(execution.id, "boom")
    with pytest.raises(InvalidTransitionError):
        await machine.pause_execution(execution.id)

    resumed = await machine.resume_execution(execution.id)
    assert resumed.phase == P.IN_PROGRESS
    assert resumed.recovery_attempts == 3


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_bounded(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)

    updated = await machine.update_progress(execution.id, 1, 3)
    assert updated.progress_percentage == 33
    updated = await machine.update_progress(execution.id, 2, 3)
    assert updated.progress_percentage == 67
    updated = await machine.update_progress(execution.id, 5, 3)
    assert updated.progress_percentage == 100


@pytest.mark.asyncio
async def test_zero_total_keeps_previous_percentage(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    await machine.update_progress(execution.id, 1, 2)
    updated = await machine.update_progress(execution.id, 2, 0)
    assert updated.steps_completed == 2
    assert updated.progress_percentage == 50


@pytest.mark.asyncio
async def test_completion_is_terminal(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    completed = await machine.complete_execution(execution.id)

    assert completed.phase == P.COMPLETED
    assert completed.progress_percentage == 100
    assert completed.completed_at is not None
    assert not completed.is_active
    assert await machine.get_active_executions() == []

    with pytest.raises(InvalidInputError):
        await machine.complete_execution(execution.id)
    with pytest.raises(InvalidInputError):
        await machine.update_progress(execution.id, 1, 3)
    with pytest.raises(InvalidInputError):
        await machine.handle_execution_error(execution.id, "late")


@pytest.mark.asyncio
async def test_pause_resume_and_transition_role(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    dev, dev_steps = await make_role("senior-developer", ["implement_batch"], order=2)

    paused = await machine.pause_execution(execution.id, reason="waiting on review")
    assert paused.phase == P.PAUSED
    assert paused.execution_state.reason == "waiting on review"

    resumed = await machine.resume_execution(execution.id)
    assert resumed.phase == P.IN_PROGRESS

    moved = await machine.transition_role(execution.id, "senior-developer")
    assert moved.current_role_id == dev.id
    assert moved.current_step_id == dev_steps[0].id
    assert moved.phase == P.IN_PROGRESS


@pytest.mark.asyncio
async def test_update_execution_validates_patch_and_transition(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)

    updated = await machine.update_execution(execution.id, {"execution_context": {"branch": "feat/login"}})
    assert updated.execution_context == {"branch": "feat/login"}

    with pytest.raises(InvalidInputError):
        await machine.update_execution(execution.id, {"progress_percentage": 80})

    await machine.complete_execution(execution.id)
    with pytest.raises(InvalidInputError):
        await machine.update_execution(execution.id, {"execution_context": {}})


@pytest.mark.asyncio
async def test_update_execution_recomputes_percentage_from_counters(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)

    updated = await machine.update_execution(execution.id, {"steps_completed": 1, "total_steps": 2})
    assert (updated.steps_completed, updated.total_steps) == (1, 2)
    assert updated.progress_percentage == 50

    updated = await machine.update_execution(execution.id, {"steps_completed": 2})
    assert updated.progress_percentage == 100


@pytest.mark.asyncio
async def test_malformed_progress_counters_are_invalid_input(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    with pytest.raises(InvalidInputError):
        await machine.update_progress(execution.id, "abc", 3)
    with pytest.raises(InvalidInputError):
        await machine.update_progress(execution.id, 1, [3])
    assert (await store.get_execution(execution.id)).steps_completed == 0


@pytest.mark.asyncio
async def test_transition_role_hands_task_over(store, make_role, make_task):
    machine, role, _, task, execution = await _setup(store, make_role, make_task)
    await make_role("senior-developer", ["implement_batch"], order=2)

    moved = await machine.transition_role(execution.id, "senior-developer", handoff_message="plan approved")

    assert (await store.get_task(task.id)).owner_role == "senior-developer"
    [handoff] = moved.execution_context["role_transitions"]
    assert handoff["from_role"] == "architect"
    assert handoff["to_role"] == "senior-developer"
    assert handoff["message"] == "plan approved"

    with pytest.raises(InvalidInputError):
        await machine.transition_role(execution.id, "senior-developer")


@pytest.mark.asyncio
async def test_transition_role_waits_for_open_attempts(store, make_role, make_task):
    machine, role, (s1, *_), task, execution = await _setup(store, make_role, make_task)
    await make_role("senior-developer", ["implement_batch"], order=2)
    await StepProgressTracker(store).start_step(s1.id, execution.id)

    with pytest.raises(InvalidInputError):
        await machine.transition_role(execution.id, "senior-developer")
    current = await store.get_execution(execution.id)
    assert current.current_role_id == role.id
    assert (await store.get_task(task.id)).owner_role is None


@pytest.mark.asyncio
async def test_update_execution_rejects_invalid_phase_change(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    await machine.resume_execution(execution.id)
    with pytest.raises(InvalidTransitionError):
        await machine.update_execution(execution.id, {"execution_state": {"phase": "initialized"}})


@pytest.mark.asyncio
async def test_stale_version_is_a_concurrent_update(store, make_role, make_task):
    machine, *_, execution = await _setup(store, make_role, make_task)
    stale = await store.get_execution(execution.id)
    await machine.update_progress(execution.id, 1, 3)

    stale.steps_completed = 2
    with pytest.raises(ConcurrentUpdateError):
        await store.update_execution(stale)


@pytest.mark.asyncio
async def test_advance_recounts_completed_steps(store, make_role, make_task):
    machine, role, (s1, s2, s3), task, execution = await _setup(store, make_role, make_task)
    tracker = StepProgressTracker(store)

    await machine.mark_step_started(execution.id, s1)
    await tracker.start_step(s1.id, execution.id)
    await tracker.complete_step(s1.id, execution_id=execution.id)
    advanced = await machine.advance(execution.id, s1.id)

    assert advanced.steps_completed == 1
    assert advanced.progress_percentage == 33
    assert advanced.current_step_id == s2.id
    assert advanced.execution_state.last_completed_step.id == s1.id
    assert advanced.execution_state.progress_markers == ["review_research"]
    assert (await store.get_task(task.id)).status == "in-progress"

    # folding the same step twice does not double count
    again = await machine.advance(execution.id, s1.id)
    assert again.steps_completed == 1


@pytest.mark.asyncio
async def test_get_execution_by_task_returns_latest(store, make_role, make_task):
    machine, role, _, task, first = await _setup(store, make_role, make_task)
    second = await machine.create_execution(role.id, task_id=task.id)
    assert (await machine.get_execution_by_task_id(task.id)).id == second.id
    with pytest.raises(NotFoundError):
        await machine.get_execution_by_task_id("missing")
    with pytest.raises(NotFoundError):
        await machine.get_execution("missing")


def test_transition_table():
    assert VALID_TRANSITIONS[P.COMPLETED] == frozenset()
    validate_phase_transition(P.INITIALIZED, P.IN_PROGRESS)
    validate_phase_transition(P.IN_PROGRESS, P.IN_PROGRESS)
    validate_phase_transition(P.FAILED, P.IN_PROGRESS)
    for target in P:
        with pytest.raises(InvalidTransitionError):
            validate_phase_transition(P.COMPLETED, target)
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_phase_transition(P.IN_PROGRESS, P.INITIALIZED)
    assert exc_info.value.to_dict()["context"] == {"from_phase": "in-progress", "to_phase": "initialized"}
