"""In-memory implementation of the workflow store."""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, TypeVar

from pydantic import BaseModel

from ..errors import ConcurrentUpdateError, DataIntegrityError, InvalidInputError, NotFoundError
from ..models import (
    ImplementationPlan,
    StepStatus,
    Subtask,
    Task,
    WorkflowExecution,
    WorkflowRole,
    WorkflowStep,
    WorkflowStepProgress,
)
from ..utils.clock import utcnow
from .repository import WorkflowStore

M = TypeVar("M", bound=BaseModel)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._roles: Dict[str, WorkflowRole] = {}
        self._steps: Dict[str, WorkflowStep] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._progress: Dict[str, WorkflowStepProgress] = {}
        self._plans: Dict[str, ImplementationPlan] = {}
        self._subtasks: Dict[str, Subtask] = {}
        # insertion counters give a stable most-recent-first order
        self._seq = 0
        self._order: Dict[str, int] = {}
        self._tx_depth = 0

    def _touch(self, key: str) -> None:
        if key not in self._order:
            self._seq += 1
            self._order[key] = self._seq

    # ------------------------------------------------------------------
    async def save_task(self, task: Task) -> Task:
        self._tasks[task.id] = _copy(task)
        return _copy(task)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return _copy(task) if task else None

    # ------------------------------------------------------------------
    async def save_role(self, role: WorkflowRole) -> WorkflowRole:
        for existing in self._roles.values():
            if existing.name == role.name and existing.id != role.id:
                raise DataIntegrityError(
                    f"Role name '{role.name}' already exists",
                    service="store",
                    operation="save_role",
                    context={"role_id": existing.id},
                )
        self._roles[role.id] = _copy(role)
        return _copy(role)

    async def get_role(self, role_id: str) -> WorkflowRole | None:
        role = self._roles.get(role_id)
        return _copy(role) if role else None

    async def get_role_by_name(self, name: str) -> WorkflowRole | None:
        for role in self._roles.values():
            if role.name == name:
                return _copy(role)
        return None

    async def list_roles(self) -> list[WorkflowRole]:
        roles = sorted(self._roles.values(), key=lambda r: (r.pipeline_order, r.name))
        return [_copy(r) for r in roles]

    async def save_step(self, step: WorkflowStep) -> WorkflowStep:
        for existing in self._steps.values():
            if (
                existing.role_id == step.role_id
                and existing.sequence_number == step.sequence_number
                and existing.id != step.id
            ):
                raise DataIntegrityError(
                    f"Sequence number {step.sequence_number} already used in role",
                    service="store",
                    operation="save_step",
                    context={"role_id": step.role_id, "step_id": existing.id},
                )
        self._steps[step.id] = _copy(step)
        return _copy(step)

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        return _copy(step) if step else None

    async def list_steps(self, role_id: Optional[str] = None) -> list[WorkflowStep]:
        steps = [s for s in self._steps.values() if role_id is None or s.role_id == role_id]
        steps.sort(key=lambda s: (s.role_id, s.sequence_number) if role_id is None else s.sequence_number)
        return [_copy(s) for s in steps]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        if execution.id in self._executions:
            raise DataIntegrityError(
                f"Execution {execution.id} already exists",
                service="store",
                operation="create_execution",
            )
        self._executions[execution.id] = _copy(execution)
        self._touch(execution.id)
        return _copy(execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return _copy(execution) if execution else None

    async def list_executions(
        self, task_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowExecution]:
        items = [
            e
            for e in self._executions.values()
            if (task_id is None or e.task_id == task_id)
            and (not active_only or e.completed_at is None)
        ]
        items.sort(key=lambda e: (e.started_at, self._order[e.id]), reverse=True)
        return [_copy(e) for e in items]

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        stored = self._executions.get(execution.id)
        if stored is None:
            raise NotFoundError(
                f"Execution {execution.id} not found",
                service="store",
                operation="update_execution",
            )
        if stored.version != execution.version:
            raise ConcurrentUpdateError(
                f"Execution {execution.id} was modified concurrently",
                service="store",
                operation="update_execution",
                context={"expected_version": execution.version, "actual_version": stored.version},
            )
        updated = execution.model_copy(
            update={"version": execution.version + 1, "updated_at": utcnow()}, deep=True
        )
        self._executions[execution.id] = updated
        return _copy(updated)

    # ------------------------------------------------------------------
    async def save_progress(self, progress: WorkflowStepProgress) -> WorkflowStepProgress:
        self._progress[progress.id] = _copy(progress)
        self._touch(progress.id)
        return _copy(progress)

    async def list_progress(
        self,
        *,
        execution_id: Optional[str] = None,
        task_id: Optional[str] = None,
        role_id: Optional[str] = None,
        step_id: Optional[str] = None,
        status: Optional[StepStatus] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowStepProgress]:
        items = [
            p
            for p in self._progress.values()
            if (execution_id is None or p.execution_id == execution_id)
            and (task_id is None or p.task_id == task_id)
            and (role_id is None or p.role_id == role_id)
            and (step_id is None or p.step_id == step_id)
            and (status is None or p.status == status)
        ]
        items.sort(key=lambda p: self._order[p.id], reverse=True)
        if limit is not None:
            items = items[:limit]
        return [_copy(p) for p in items]

    # ------------------------------------------------------------------
    async def save_plan(self, plan: ImplementationPlan) -> ImplementationPlan:
        self._plans[plan.id] = _copy(plan)
        self._touch(plan.id)
        return _copy(plan)

    async def get_plan_for_task(self, task_id: str) -> ImplementationPlan | None:
        plans = [p for p in self._plans.values() if p.task_id == task_id]
        if not plans:
            return None
        latest = max(plans, key=lambda p: (p.created_at, self._order[p.id]))
        return _copy(latest)

    async def save_subtask(self, subtask: Subtask) -> Subtask:
        self._subtasks[subtask.id] = _copy(subtask)
        return _copy(subtask)

    async def get_subtask(self, subtask_id: str) -> Subtask | None:
        subtask = self._subtasks.get(subtask_id)
        return _copy(subtask) if subtask else None

    async def list_subtasks(
        self,
        *,
        plan_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> list[Subtask]:
        items = [
            s
            for s in self._subtasks.values()
            if (plan_id is None or s.plan_id == plan_id)
            and (batch_id is None or s.batch_id == batch_id)
        ]
        items.sort(key=lambda s: s.sequence_number)
        return [_copy(s) for s in items]

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryWorkflowStore"]:
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        snapshot = copy.deepcopy(self._state())
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._restore(snapshot)
            raise
        finally:
            self._tx_depth = 0

    def _state(self) -> dict[str, Any]:
        return {
            "_tasks": self._tasks,
            "_roles": self._roles,
            "_steps": self._steps,
            "_executions": self._executions,
            "_progress": self._progress,
            "_plans": self._plans,
            "_subtasks": self._subtasks,
            "_order": self._order,
            "_seq": self._seq,
        }

    def _restore(self, snapshot: dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    async def raw_query(
        self, sql: str, parameters: Optional[dict[str, Any]] = None, limit: int = 1000
    ) -> list[dict[str, Any]]:
        raise InvalidInputError(
            "Raw queries are not supported by the in-memory store",
            service="store",
            operation="raw_query",
        )
