import pytest

from baton.engine import BatchTracker, SubtaskStatusUpdate, derive_task_status
from baton.errors import DataIntegrityError, InvalidInputError, NotFoundError
from baton.models import Task


@pytest.mark.asyncio
async def test_batch_completes_with_its_last_subtask(store, make_task, make_plan):
    task = await make_task()
    _, (first, second, _) = await make_plan(
        task,
        [
            ("Add model", "1.1", "completed"),
            ("Add endpoint", "1.1", "in-progress"),
            ("Write docs", "1.2", "not-started"),
        ],
    )
    tracker = BatchTracker(store)

    before = await tracker.check_batch_status(task.id, "1.1")
    assert before["is_complete"] is False
    assert before["pending_subtasks"] == [
        {"id": second.id, "name": "Add endpoint", "status": "in-progress"}
    ]

    result = await tracker.update_subtask_status(
        task.id, second.id, "completed", {"files_modified": ["api/login.py"]}
    )
    assert result["batch_status"]["is_complete"] is True
    assert result["batch_status"]["completed_subtasks_in_batch"] == 2
    assert result["batch_status"]["batch_title"] == "Batch 1.1"
    assert result["batch_status"]["files_modified"] == ["api/login.py"]
    assert result["plan_complete"] is False
    assert result["subtask"]["status"] == "completed"
    assert result["subtask"]["completed_at"] is not None


@pytest.mark.asyncio
async def test_partially_completed_batch_reports_counts(store, make_task, make_plan):
    task = await make_task()
    _, (_, _, third) = await make_plan(
        task,
        [
            ("Add model", "2", "completed"),
            ("Add endpoint", "2", "completed"),
            ("Add migration", "2", "not-started"),
        ],
    )

    status = await BatchTracker(store).check_batch_status(task.id, "2")
    assert status["is_complete"] is False
    assert status["completed_subtasks_in_batch"] == 2
    assert status["total_subtasks_in_batch"] == 3
    assert status["pending_subtasks"] == [
        {"id": third.id, "name": "Add migration", "status": "not-started"}
    ]


@pytest.mark.asyncio
async def test_plan_complete_iff_every_subtask_completed(store, make_task, make_plan):
    task = await make_task()
    _, (a, b) = await make_plan(task, [("A", "1", "not-started"), ("B", "2", "needs-review")])
    tracker = BatchTracker(store)

    result = await tracker.update_subtask_statuses(
        task.id,
        [
            {"subtask_id": a.id, "status": "completed"},
            SubtaskStatusUpdate(subtask_id=b.id, status="completed"),
        ],
    )
    assert result["plan_complete"] is True
    assert all(batch["is_complete"] for batch in result["batches"].values())

    reopened = await tracker.update_subtask_status(task.id, b.id, "needs-changes")
    assert reopened["plan_complete"] is False
    assert reopened["subtask"]["completed_at"] is None


@pytest.mark.asyncio
async def test_unknown_or_empty_batch(store, make_task, make_plan):
    task = await make_task()
    await make_plan(task, [("A", "1", "not-started")])
    tracker = BatchTracker(store)

    with pytest.raises(NotFoundError) as exc_info:
        await tracker.check_batch_status(task.id, "9")
    assert exc_info.value.message == "No subtasks found for batch ID 9"
    with pytest.raises(NotFoundError):
        await tracker.check_batch_status("task-without-plan", "1")


@pytest.mark.asyncio
async def test_subtask_of_another_task_is_rejected(store, make_task, make_plan):
    task = await make_task()
    other = await store.save_task(Task(name="Other"))
    await make_plan(task, [("A", "1", "not-started")])
    _, (foreign,) = await make_plan(other, [("B", "1", "not-started")])

    with pytest.raises(DataIntegrityError):
        await BatchTracker(store).update_subtask_status(task.id, foreign.id, "completed")


@pytest.mark.asyncio
async def test_failed_batch_update_rolls_back(store, make_task, make_plan):
    task = await make_task()
    _, (a,) = await make_plan(task, [("A", "1", "not-started")])

    with pytest.raises(NotFoundError):
        await BatchTracker(store).update_subtask_statuses(
            task.id,
            [
                {"subtask_id": a.id, "status": "completed"},
                {"subtask_id": "missing", "status": "completed"},
            ],
        )
    assert (await store.get_subtask(a.id)).status.value == "not-started"


@pytest.mark.asyncio
async def test_invalid_updates(store, make_task, make_plan):
    task = await make_task()
    _, (a,) = await make_plan(task, [("A", "1", "not-started")])
    tracker = BatchTracker(store)

    with pytest.raises(InvalidInputError):
        await tracker.update_subtask_statuses(task.id, [])
    with pytest.raises(InvalidInputError):
        await tracker.update_subtask_status(task.id, a.id, "done")


@pytest.mark.asyncio
async def test_breakdown_and_task_status_sync(store, make_task, make_plan):
    task = await make_task()
    _, (a, b, c) = await make_plan(
        task, [("A", "1", "completed"), ("B", "1", "needs-review"), ("C", "2", "not-started")]
    )
    tracker = BatchTracker(store)

    breakdown = await tracker.get_plan_status_breakdown(task.id)
    assert breakdown["total"] == 3
    assert breakdown["completed"] == 1
    assert breakdown["needs-review"] == 1
    assert breakdown["completion_percentage"] == 33

    assert await tracker.sync_task_status(task.id) == "needs-review"
    assert (await store.get_task(task.id)).status == "needs-review"

    await tracker.update_subtask_statuses(
        task.id,
        [{"subtask_id": s.id, "status": "completed"} for s in (b, c)],
    )
    assert await tracker.sync_task_status(task.id) == "completed"


@pytest.mark.parametrize(
    "breakdown, expected",
    [
        ({"total": 0}, "not-started"),
        ({"total": 2, "completed": 2}, "completed"),
        ({"total": 3, "completed": 1, "needs-changes": 1, "needs-review": 1}, "needs-changes"),
        ({"total": 2, "needs-review": 1, "in-progress": 1}, "needs-review"),
        ({"total": 2, "completed": 1, "not-started": 1}, "in-progress"),
        ({"total": 2, "not-started": 2}, "not-started"),
    ],
)
def test_derive_task_status(breakdown, expected):
    assert derive_task_status(breakdown) == expected
