"""Ordering of steps within a role."""

from __future__ import annotations

import logging
from typing import Optional

from ..errors import InvalidInputError, NotFoundError
from ..models import StepStatus, WorkflowStep, WorkflowStepProgress
from ..persistence.repository import WorkflowStore

logger = logging.getLogger(__name__)


class StepSequencer:
    """Resolve which step of a role comes next. Read-only."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    async def steps_for_role(self, role_id: str) -> list[WorkflowStep]:
        return await self.store.list_steps(role_id)

    async def first_step(self, role_id: str) -> WorkflowStep | None:
        steps = await self.store.list_steps(role_id)
        return steps[0] if steps else None

    async def step_by_name(self, role_id: str, name: str) -> WorkflowStep:
        for step in await self.store.list_steps(role_id):
            if step.name == name:
                return step
        raise NotFoundError(
            f"Step '{name}' not found for role {role_id}",
            service="sequencer",
            operation="step_by_name",
            context={"role_id": role_id, "name": name},
        )

    async def next_available_step(
        self,
        task_id: Optional[str],
        role_id: str,
        execution_id: Optional[str] = None,
    ) -> WorkflowStep | None:
        """Lowest-sequence step of ``role_id`` without a COMPLETED attempt.

        Completed attempts are scoped by task, or by execution when the
        execution has no task yet. ``None`` means the role is finished.
        """
        if task_id is None and execution_id is None:
            raise InvalidInputError(
                "Either task_id or execution_id is required",
                service="sequencer",
                operation="next_available_step",
                context={"role_id": role_id},
            )
        scope = {"task_id": task_id} if task_id is not None else {"execution_id": execution_id}
        completed = await self.store.list_progress(
            role_id=role_id, status=StepStatus.COMPLETED, **scope
        )
        done = {record.step_id for record in completed}
        for step in await self.store.list_steps(role_id):
            if step.id not in done:
                return step
        logger.debug(f"All steps of role {role_id} completed for {scope}")
        return None

    async def step_after(self, step: WorkflowStep) -> WorkflowStep | None:
        for candidate in await self.store.list_steps(step.role_id):
            if candidate.sequence_number > step.sequence_number:
                return candidate
        return None

    async def get_role_step_statistics(
        self, role_id: str, task_id: Optional[str] = None
    ) -> dict[str, int]:
        steps = await self.store.list_steps(role_id)
        records = await self.store.list_progress(role_id=role_id, task_id=task_id)
        by_status: dict[StepStatus, set[str]] = {}
        for record in records:
            by_status.setdefault(record.status, set()).add(record.step_id)
        return {
            "total_steps": len(steps),
            "completed_steps": len(by_status.get(StepStatus.COMPLETED, set())),
            "failed_steps": len(by_status.get(StepStatus.FAILED, set())),
            "in_progress_steps": len(by_status.get(StepStatus.IN_PROGRESS, set())),
        }

    async def get_step_execution_history(
        self, step_id: str, limit: int = 10
    ) -> list[WorkflowStepProgress]:
        return await self.store.list_progress(step_id=step_id, limit=limit)
