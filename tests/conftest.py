from typing import Awaitable, Callable, Optional

import pytest

from baton.models import (
    ImplementationPlan,
    StepCondition,
    Subtask,
    Task,
    WorkflowRole,
    WorkflowStep,
)
from baton.persistence import InMemoryWorkflowStore

RoleFactory = Callable[..., Awaitable[tuple[WorkflowRole, list[WorkflowStep]]]]


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def make_role(store) -> RoleFactory:
    """Create a role with one step per name, numbered from 1."""

    async def _make(
        name: str,
        step_names: list[str],
        order: int = 1,
        conditions: Optional[dict[str, list[dict]]] = None,
        target=None,
    ) -> tuple[WorkflowRole, list[WorkflowStep]]:
        target = target or store
        role = await target.save_role(WorkflowRole(name=name, pipeline_order=order))
        steps = []
        for seq, step_name in enumerate(step_names, start=1):
            step_conditions = [
                StepCondition.model_validate(c) for c in (conditions or {}).get(step_name, [])
            ]
            steps.append(
                await target.save_step(
                    WorkflowStep(
                        role_id=role.id,
                        name=step_name,
                        sequence_number=seq,
                        conditions=step_conditions,
                    )
                )
            )
        return role, steps

    return _make


@pytest.fixture
def make_task(store) -> Callable[..., Awaitable[Task]]:
    async def _make(name: str = "Add login", status: str = "not-started", target=None) -> Task:
        return await (target or store).save_task(Task(name=name, slug="TSK-1", status=status))

    return _make


@pytest.fixture
def make_plan(store) -> Callable[..., Awaitable[tuple[ImplementationPlan, list[Subtask]]]]:
    """Create a plan whose subtasks are given as (name, batch_id, status)."""

    async def _make(task: Task, subtasks: list[tuple[str, Optional[str], str]], target=None):
        target = target or store
        plan = await target.save_plan(ImplementationPlan(task_id=task.id, overview="plan"))
        saved = []
        for seq, (name, batch_id, status) in enumerate(subtasks, start=1):
            saved.append(
                await target.save_subtask(
                    Subtask(
                        plan_id=plan.id,
                        task_id=task.id,
                        name=name,
                        status=status,
                        sequence_number=seq,
                        batch_id=batch_id,
                        batch_title=f"Batch {batch_id}" if batch_id else None,
                    )
                )
            )
        return plan, saved

    return _make
