"""Start a workflow before its task exists.

The execution is created without a task and pointed at the first step of the
initial role; the task data rides along in the execution context until the
first step creates the task and links it with :func:`attach_task`.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError

from ..errors import InvalidInputError, NotFoundError
from ..models import Task, WorkflowExecution
from ..utils.clock import utcnow
from .execution import ExecutionStateMachine

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_ROLE = "boomerang"


async def bootstrap_workflow(
    machine: ExecutionStateMachine,
    initial_role: str = DEFAULT_INITIAL_ROLE,
    execution_mode: Optional[str] = None,
    execution_context: Optional[dict[str, Any]] = None,
    task_data: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    role = await machine.resolve_role(initial_role)
    first = await machine.sequencer.first_step(role.id)
    if first is None:
        raise NotFoundError(
            f"Role '{role.name}' has no steps to start from",
            service="bootstrap",
            operation="bootstrap_workflow",
            context={"role_id": role.id},
        )

    context = {
        **(execution_context or {}),
        "bootstrapped": True,
        "bootstrapped_at": utcnow().isoformat(),
    }
    if task_data:
        context["task_creation_data"] = task_data

    execution = await machine.create_execution(
        role.id, task_id=None, execution_mode=execution_mode, execution_context=context
    )
    logger.info(f"Workflow bootstrapped: execution {execution.id} at {role.name}/{first.name}")
    return {
        "execution": execution.model_dump(mode="json"),
        "role": role.model_dump(mode="json"),
        "first_step": first.model_dump(mode="json"),
    }


async def attach_task(
    machine: ExecutionStateMachine, execution_id: str, task: Task | dict[str, Any]
) -> WorkflowExecution:
    """Persist ``task`` and link it to a task-less execution."""
    execution = await machine.get_execution(execution_id)
    if execution.task_id is not None:
        raise InvalidInputError(
            f"Execution {execution_id} is already linked to task {execution.task_id}",
            service="bootstrap",
            operation="attach_task",
        )
    if not isinstance(task, Task):
        seed = dict(execution.execution_context.get("task_creation_data") or {})
        seed.update(task)
        try:
            task = Task.model_validate(seed)
        except ValidationError as exc:
            raise InvalidInputError(
                "Invalid task data",
                service="bootstrap",
                operation="attach_task",
                context={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
    if task.owner_role is None:
        role = await machine.store.get_role(execution.current_role_id)
        task.owner_role = role.name if role else None

    context = {k: v for k, v in execution.execution_context.items() if k != "task_creation_data"}
    context["task_id"] = task.id
    execution.task_id = task.id
    execution.execution_context = context

    async with machine.store.transaction() as tx:
        await tx.save_task(task)
        # earlier attempts must count towards the task from now on
        for record in await tx.list_progress(execution_id=execution_id):
            if record.task_id is None:
                record.task_id = task.id
                await tx.save_progress(record)
        execution = await tx.update_execution(execution)
    logger.info(f"Execution {execution_id} linked to task {task.id}")
    return execution
