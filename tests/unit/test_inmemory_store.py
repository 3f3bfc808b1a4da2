import pytest

from baton.errors import BatonError, ConcurrentUpdateError, DataIntegrityError, InvalidInputError, NotFoundError
from baton.models import Task, WorkflowExecution, WorkflowRole, WorkflowStep


@pytest.mark.asyncio
async def test_records_are_copied_in_and_out(store):
    task = await store.save_task(Task(name="Add login"))
    task.name = "changed"
    assert (await store.get_task(task.id)).name == "Add login"

    loaded = await store.get_task(task.id)
    loaded.status = "completed"
    assert (await store.get_task(task.id)).status == "not-started"


@pytest.mark.asyncio
async def test_update_execution_bumps_version(store):
    execution = await store.create_execution(WorkflowExecution(current_role_id="r1"))
    updated = await store.update_execution(execution)
    assert updated.version == execution.version + 1

    with pytest.raises(ConcurrentUpdateError):
        await store.update_execution(execution)
    with pytest.raises(NotFoundError):
        await store.update_execution(WorkflowExecution(current_role_id="r1"))
    with pytest.raises(DataIntegrityError):
        await store.create_execution(updated)


@pytest.mark.asyncio
async def test_unique_role_names_and_step_sequence(store):
    role = await store.save_role(WorkflowRole(name="architect"))
    await store.save_role(role)
    with pytest.raises(DataIntegrityError):
        await store.save_role(WorkflowRole(name="architect"))

    await store.save_step(WorkflowStep(role_id=role.id, name="a", sequence_number=1))
    with pytest.raises(DataIntegrityError):
        await store.save_step(WorkflowStep(role_id=role.id, name="b", sequence_number=1))


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    kept = await store.save_task(Task(name="kept"))
    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.save_task(Task(name="lost"))
            async with tx.transaction() as inner:
                await inner.save_role(WorkflowRole(name="lost-role"))
            raise RuntimeError("abort")

    assert await store.get_task(kept.id) is not None
    assert await store.list_roles() == []
    assert len(store._tasks) == 1


@pytest.mark.asyncio
async def test_raw_query_is_not_supported(store):
    with pytest.raises(InvalidInputError):
        await store.raw_query("SELECT 1")


def test_error_payload():
    error = NotFoundError(
        "Task t1 not found", service="store", operation="get_task", context={"task_id": "t1"}
    )
    assert isinstance(error, LookupError)
    assert isinstance(error, BatonError)
    assert error.to_dict() == {
        "code": "NOT_FOUND",
        "message": "Task t1 not found",
        "service": "store",
        "operation": "get_task",
        "context": {"task_id": "t1"},
    }
