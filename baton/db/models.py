from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _ts(nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class TaskRow(SQLModel, table=True):
    __tablename__ = "baton_task"

    id: str = Field(primary_key=True)
    slug: Optional[str] = Field(default=None, index=True)
    name: str
    status: str = Field(default="not-started")
    priority: str = Field(default="Medium")
    owner_role: Optional[str] = None
    created_at: datetime = Field(sa_column=_ts(nullable=False))
    updated_at: datetime = Field(sa_column=_ts(nullable=False))


class RoleRow(SQLModel, table=True):
    __tablename__ = "baton_role"

    id: str = Field(primary_key=True)
    name: str = Field(unique=True, index=True)
    display_name: Optional[str] = None
    description: Optional[str] = None
    pipeline_order: int = 0


class StepRow(SQLModel, table=True):
    """Step definition; conditions and actions are stored as JSON documents."""

    __tablename__ = "baton_step"
    __table_args__ = (UniqueConstraint("role_id", "sequence_number"),)

    id: str = Field(primary_key=True)
    role_id: str = Field(foreign_key="baton_role.id", index=True)
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    sequence_number: int
    step_type: str = Field(default="ACTION")
    behavioral_context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    approach_guidance: dict = Field(default_factory=dict, sa_column=Column(JSON))
    conditions: list = Field(default_factory=list, sa_column=Column(JSON))
    actions: list = Field(default_factory=list, sa_column=Column(JSON))


class ExecutionRow(SQLModel, table=True):
    __tablename__ = "baton_execution"

    id: str = Field(primary_key=True)
    task_id: Optional[str] = Field(default=None, index=True)
    current_role_id: str
    current_step_id: Optional[str] = None
    execution_mode: str = Field(default="GUIDED")
    execution_state: dict = Field(default_factory=dict, sa_column=Column(JSON))
    execution_context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    steps_completed: int = 0
    total_steps: int = 0
    progress_percentage: float = 0
    recovery_attempts: int = 0
    max_recovery_attempts: int = 3
    last_error: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    started_at: datetime = Field(sa_column=_ts(nullable=False))
    completed_at: Optional[datetime] = Field(default=None, sa_column=_ts())
    updated_at: datetime = Field(sa_column=_ts(nullable=False))
    version: int = 0


class StepProgressRow(SQLModel, table=True):
    """One step attempt. ``seq`` orders attempts most recent first."""

    __tablename__ = "baton_step_progress"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(unique=True, index=True)
    execution_id: str = Field(index=True)
    step_id: str = Field(index=True)
    role_id: str = Field(index=True)
    task_id: Optional[str] = Field(default=None, index=True)
    status: str
    started_at: Optional[datetime] = Field(default=None, sa_column=_ts())
    completed_at: Optional[datetime] = Field(default=None, sa_column=_ts())
    failed_at: Optional[datetime] = Field(default=None, sa_column=_ts())
    duration: Optional[float] = None
    result: Optional[str] = None
    execution_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    error_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(sa_column=_ts(nullable=False))


class PlanRow(SQLModel, table=True):
    __tablename__ = "baton_plan"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(unique=True, index=True)
    task_id: str = Field(index=True)
    overview: Optional[str] = None
    approach: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(sa_column=_ts(nullable=False))


class SubtaskRow(SQLModel, table=True):
    __tablename__ = "baton_subtask"

    id: str = Field(primary_key=True)
    plan_id: str = Field(index=True)
    task_id: str = Field(index=True)
    name: str
    description: Optional[str] = None
    status: str = Field(default="not-started")
    sequence_number: int = 0
    batch_id: Optional[str] = Field(default=None, index=True)
    batch_title: Optional[str] = None
    started_at: Optional[datetime] = Field(default=None, sa_column=_ts())
    completed_at: Optional[datetime] = Field(default=None, sa_column=_ts())
    completion_evidence: dict = Field(default_factory=dict, sa_column=Column(JSON))
