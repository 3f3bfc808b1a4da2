"""Store abstraction consumed by the workflow engine."""

from __future__ import annotations

from typing import Any, AsyncContextManager, Optional, Protocol

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


class WorkflowStore(Protocol):
    """Protocol for workflow state persistence backends.

    Lists are returned in a stable order: steps by ``sequence_number``,
    executions and progress records most recent first.
    """

    # tasks -------------------------------------------------------------
    async def save_task(self, task: Task) -> Task:
        """Insert or replace a task."""

    async def get_task(self, task_id: str) -> Task | None:
        """Retrieve a task by id."""

    # roles and steps ---------------------------------------------------
    async def save_role(self, role: WorkflowRole) -> WorkflowRole:
        """Insert or replace a role."""

    async def get_role(self, role_id: str) -> WorkflowRole | None:
        """Retrieve a role by id."""

    async def get_role_by_name(self, name: str) -> WorkflowRole | None:
        """Retrieve a role by its unique name."""

    async def list_roles(self) -> list[WorkflowRole]:
        """Return roles in pipeline order."""

    async def save_step(self, step: WorkflowStep) -> WorkflowStep:
        """Insert or replace a step; sequence numbers are unique per role."""

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        """Retrieve a step by id."""

    async def list_steps(self, role_id: Optional[str] = None) -> list[WorkflowStep]:
        """Return the steps of a role (or all roles) in sequence order."""

    # executions --------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution record."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self, task_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowExecution]:
        """Return executions, most recently started first."""

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Compare-and-swap write keyed on ``execution.version``."""

    # progress ----------------------------------------------------------
    async def save_progress(self, progress: WorkflowStepProgress) -> WorkflowStepProgress:
        """Insert or replace a progress record."""

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
        """Return matching progress records, most recent first."""

    # plans and subtasks ------------------------------------------------
    async def save_plan(self, plan: ImplementationPlan) -> ImplementationPlan:
        """Insert or replace an implementation plan."""

    async def get_plan_for_task(self, task_id: str) -> ImplementationPlan | None:
        """Return the latest plan of a task."""

    async def save_subtask(self, subtask: Subtask) -> Subtask:
        """Insert or replace a subtask."""

    async def get_subtask(self, subtask_id: str) -> Subtask | None:
        """Retrieve a subtask by id."""

    async def list_subtasks(
        self,
        *,
        plan_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> list[Subtask]:
        """Return matching subtasks in sequence order."""

    # primitives --------------------------------------------------------
    def transaction(self) -> AsyncContextManager["WorkflowStore"]:
        """Run a block of store operations atomically."""

    async def raw_query(
        self, sql: str, parameters: Optional[dict[str, Any]] = None, limit: int = 1000
    ) -> list[dict[str, Any]]:
        """Run a read-only query and return at most ``limit`` rows."""
