"""SQL implementation of the workflow store (SQLite or PostgreSQL)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from ..db import (
    ExecutionRow,
    PlanRow,
    RoleRow,
    StepProgressRow,
    StepRow,
    SubtaskRow,
    TaskRow,
    WorkflowDB,
)
from ..errors import ConcurrentUpdateError, DataIntegrityError, NotFoundError
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

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_DATETIME_FIELDS = (
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
    "failed_at",
)


def _to_columns(model: BaseModel) -> dict[str, Any]:
    """Dump a domain model to column values; datetimes stay native."""
    data = model.model_dump(mode="json")
    for name in _DATETIME_FIELDS:
        if name in data:
            data[name] = getattr(model, name)
    return data


def _to_model(row: SQLModel, model_cls: Type[M]) -> M:
    return model_cls.model_validate(row.model_dump())


class SQLWorkflowStore(WorkflowStore):
    """Persist workflow state with SQLModel tables.

    A store created by :meth:`transaction` is bound to one session; every
    operation on it joins that session's transaction.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        db: Optional[WorkflowDB] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        if db is None:
            if not database_url:
                raise ValueError("database_url is required")
            db = WorkflowDB(database_url)
        self.db = db
        self._session = session

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
        else:
            async with self.db.session() as session:
                yield session

    async def _upsert(
        self,
        session: AsyncSession,
        row_cls: Type[SQLModel],
        data: dict[str, Any],
        operation: str,
    ) -> None:
        if "seq" in row_cls.model_fields:
            result = await session.execute(select(row_cls).where(row_cls.id == data["id"]))
            existing = result.scalars().first()
        else:
            existing = await session.get(row_cls, data["id"])
        if existing is None:
            session.add(row_cls(**data))
        else:
            for key, value in data.items():
                setattr(existing, key, value)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise DataIntegrityError(
                f"Constraint violated while saving {row_cls.__tablename__}",
                service="store",
                operation=operation,
                context={"id": data.get("id"), "detail": str(exc.orig)},
            ) from exc

    async def _get(self, row_cls: Type[SQLModel], key: str, model_cls: Type[M]) -> M | None:
        async with self._scope() as session:
            if "seq" in row_cls.model_fields:
                result = await session.execute(select(row_cls).where(row_cls.id == key))
                row = result.scalars().first()
            else:
                row = await session.get(row_cls, key)
            return _to_model(row, model_cls) if row else None

    async def _all(self, statement: Any, model_cls: Type[M]) -> list[M]:
        async with self._scope() as session:
            result = await session.execute(statement)
            return [_to_model(row, model_cls) for row in result.scalars().all()]

    async def _save(self, model: M, row_cls: Type[SQLModel], operation: str) -> M:
        async with self._scope() as session:
            await self._upsert(session, row_cls, _to_columns(model), operation)
        return model

    # ------------------------------------------------------------------
    async def save_task(self, task: Task) -> Task:
        return await self._save(task, TaskRow, "save_task")

    async def get_task(self, task_id: str) -> Task | None:
        return await self._get(TaskRow, task_id, Task)

    async def save_role(self, role: WorkflowRole) -> WorkflowRole:
        return await self._save(role, RoleRow, "save_role")

    async def get_role(self, role_id: str) -> WorkflowRole | None:
        return await self._get(RoleRow, role_id, WorkflowRole)

    async def get_role_by_name(self, name: str) -> WorkflowRole | None:
        roles = await self._all(select(RoleRow).where(RoleRow.name == name), WorkflowRole)
        return roles[0] if roles else None

    async def list_roles(self) -> list[WorkflowRole]:
        return await self._all(
            select(RoleRow).order_by(RoleRow.pipeline_order, RoleRow.name), WorkflowRole
        )

    async def save_step(self, step: WorkflowStep) -> WorkflowStep:
        return await self._save(step, StepRow, "save_step")

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        return await self._get(StepRow, step_id, WorkflowStep)

    async def list_steps(self, role_id: Optional[str] = None) -> list[WorkflowStep]:
        statement = select(StepRow)
        if role_id is not None:
            statement = statement.where(StepRow.role_id == role_id)
        statement = statement.order_by(StepRow.role_id, StepRow.sequence_number)
        return await self._all(statement, WorkflowStep)

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._scope() as session:
            session.add(ExecutionRow(**_to_columns(execution)))
            try:
                await session.flush()
            except IntegrityError as exc:
                raise DataIntegrityError(
                    f"Execution {execution.id} already exists",
                    service="store",
                    operation="create_execution",
                ) from exc
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._get(ExecutionRow, execution_id, WorkflowExecution)

    async def list_executions(
        self, task_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowExecution]:
        statement = select(ExecutionRow)
        if task_id is not None:
            statement = statement.where(ExecutionRow.task_id == task_id)
        if active_only:
            statement = statement.where(ExecutionRow.completed_at.is_(None))
        statement = statement.order_by(ExecutionRow.started_at.desc())
        return await self._all(statement, WorkflowExecution)

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        updated = execution.model_copy(
            update={"version": execution.version + 1, "updated_at": utcnow()}
        )
        values = _to_columns(updated)
        values.pop("id")
        async with self._scope() as session:
            result = await session.execute(
                update(ExecutionRow)
                .where(ExecutionRow.id == execution.id)
                .where(ExecutionRow.version == execution.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await session.get(ExecutionRow, execution.id)
                if current is None:
                    raise NotFoundError(
                        f"Execution {execution.id} not found",
                        service="store",
                        operation="update_execution",
                    )
                raise ConcurrentUpdateError(
                    f"Execution {execution.id} was modified concurrently",
                    service="store",
                    operation="update_execution",
                    context={
                        "expected_version": execution.version,
                        "actual_version": current.version,
                    },
                )
        return updated

    # ------------------------------------------------------------------
    async def save_progress(self, progress: WorkflowStepProgress) -> WorkflowStepProgress:
        return await self._save(progress, StepProgressRow, "save_progress")

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
        statement = select(StepProgressRow)
        filters: Iterable[tuple[Any, Any]] = (
            (StepProgressRow.execution_id, execution_id),
            (StepProgressRow.task_id, task_id),
            (StepProgressRow.role_id, role_id),
            (StepProgressRow.step_id, step_id),
            (StepProgressRow.status, status.value if status is not None else None),
        )
        for column, value in filters:
            if value is not None:
                statement = statement.where(column == value)
        statement = statement.order_by(StepProgressRow.seq.desc())
        if limit is not None:
            statement = statement.limit(limit)
        return await self._all(statement, WorkflowStepProgress)

    # ------------------------------------------------------------------
    async def save_plan(self, plan: ImplementationPlan) -> ImplementationPlan:
        return await self._save(plan, PlanRow, "save_plan")

    async def get_plan_for_task(self, task_id: str) -> ImplementationPlan | None:
        plans = await self._all(
            select(PlanRow)
            .where(PlanRow.task_id == task_id)
            .order_by(PlanRow.created_at.desc(), PlanRow.seq.desc())
            .limit(1),
            ImplementationPlan,
        )
        return plans[0] if plans else None

    async def save_subtask(self, subtask: Subtask) -> Subtask:
        return await self._save(subtask, SubtaskRow, "save_subtask")

    async def get_subtask(self, subtask_id: str) -> Subtask | None:
        return await self._get(SubtaskRow, subtask_id, Subtask)

    async def list_subtasks(
        self,
        *,
        plan_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> list[Subtask]:
        statement = select(SubtaskRow)
        if plan_id is not None:
            statement = statement.where(SubtaskRow.plan_id == plan_id)
        if batch_id is not None:
            statement = statement.where(SubtaskRow.batch_id == batch_id)
        statement = statement.order_by(SubtaskRow.sequence_number)
        return await self._all(statement, Subtask)

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLWorkflowStore"]:
        if self._session is not None:
            yield self
            return
        async with self.db.session() as session:
            yield SQLWorkflowStore(db=self.db, session=session)

    async def raw_query(
        self, sql: str, parameters: Optional[dict[str, Any]] = None, limit: int = 1000
    ) -> list[dict[str, Any]]:
        async with self._scope() as session:
            result = await session.execute(text(sql), parameters or {})
            rows = result.mappings().fetchmany(limit)
            return [dict(row) for row in rows]
