"""Domain models for workflow definitions and execution state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, model_validator

from .utils.clock import ensure_utc, utcnow

UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


def new_id() -> str:
    return str(uuid4())


class TaskStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    NEEDS_REVIEW = "needs-review"
    NEEDS_CHANGES = "needs-changes"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ExecutionMode(str, Enum):
    GUIDED = "GUIDED"
    AUTOMATED = "AUTOMATED"
    HYBRID = "HYBRID"


class ExecutionPhase(str, Enum):
    INITIALIZED = "initialized"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class StepStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class StepResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class ConditionType(str, Enum):
    CONTEXT_CHECK = "CONTEXT_CHECK"
    FILE_EXISTS = "FILE_EXISTS"
    TASK_STATUS = "TASK_STATUS"
    GIT_STATUS = "GIT_STATUS"
    PREVIOUS_STEP_COMPLETED = "PREVIOUS_STEP_COMPLETED"
    CUSTOM_LOGIC = "CUSTOM_LOGIC"


# ----------------------------------------------------------------------
# Reference data


class Task(BaseModel):
    """Unit of work moving through the role pipeline."""

    id: str = Field(default_factory=new_id)
    slug: Optional[str] = None
    name: str
    status: str = TaskStatus.NOT_STARTED.value
    priority: str = "Medium"
    owner_role: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class WorkflowRole(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    pipeline_order: int = 0


# ----------------------------------------------------------------------
# Condition logic, one variant per condition type


class ContextCheckLogic(BaseModel):
    type: Literal["CONTEXT_CHECK"] = "CONTEXT_CHECK"
    required_properties: list[str] = Field(default_factory=list)


class FileExistsLogic(BaseModel):
    type: Literal["FILE_EXISTS"] = "FILE_EXISTS"
    files: list[str] = Field(default_factory=list)
    directories: list[str] = Field(default_factory=list)


class TaskStatusLogic(BaseModel):
    type: Literal["TASK_STATUS"] = "TASK_STATUS"
    required_status: Optional[str] = None
    forbidden_statuses: list[str] = Field(default_factory=list)


class GitStatusLogic(BaseModel):
    type: Literal["GIT_STATUS"] = "GIT_STATUS"
    require_clean_working_tree: bool = False
    require_branch: Optional[str] = None


class PreviousStepLogic(BaseModel):
    type: Literal["PREVIOUS_STEP_COMPLETED"] = "PREVIOUS_STEP_COMPLETED"
    step_id: Optional[str] = None
    role_id: Optional[str] = None


class ExpressionLogic(BaseModel):
    """Equality, inequality or existence test against ``parameters``."""

    type: Literal["CUSTOM_LOGIC"] = "CUSTOM_LOGIC"
    kind: Literal["expression"] = "expression"
    expression: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class DatabaseQueryLogic(BaseModel):
    """Read-only query that passes when it returns at least one row."""

    type: Literal["CUSTOM_LOGIC"] = "CUSTOM_LOGIC"
    kind: Literal["database_query"] = "database_query"
    expression: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class FileContentLogic(BaseModel):
    """Regex (``pattern``) or substring (``expression``) match in a file."""

    type: Literal["CUSTOM_LOGIC"] = "CUSTOM_LOGIC"
    kind: Literal["file_content_check"] = "file_content_check"
    file_path: str
    pattern: Optional[str] = None
    expression: Optional[str] = None
    encoding: Optional[str] = None


class EnvironmentLogic(BaseModel):
    type: Literal["CUSTOM_LOGIC"] = "CUSTOM_LOGIC"
    kind: Literal["environment_check"] = "environment_check"
    env_var: str
    check_type: str = "exists"
    expected_value: Optional[str] = None


CustomLogic = Annotated[
    Union[ExpressionLogic, DatabaseQueryLogic, FileContentLogic, EnvironmentLogic],
    Field(discriminator="kind"),
]

ConditionLogic = Annotated[
    Union[
        ContextCheckLogic,
        FileExistsLogic,
        TaskStatusLogic,
        GitStatusLogic,
        PreviousStepLogic,
        CustomLogic,
    ],
    Field(discriminator="type"),
]

_CUSTOM_KIND_ALIASES = {"javascript": "expression", "js": "expression"}


class StepCondition(BaseModel):
    """Named precondition attached to a step."""

    id: str = Field(default_factory=new_id)
    name: str
    required: bool = True
    logic: ConditionLogic

    @model_validator(mode="before")
    @classmethod
    def _fold_condition_type(cls, data: Any) -> Any:
        # accept {"condition_type": ..., "logic": {...}} as stored by older seeds
        if not isinstance(data, dict):
            return data
        condition_type = data.get("condition_type") or data.get("conditionType")
        if not condition_type:
            return data
        data = {k: v for k, v in data.items() if k not in ("condition_type", "conditionType")}
        logic = dict(data.get("logic") or {})
        if condition_type == ConditionType.CUSTOM_LOGIC.value and "kind" not in logic:
            kind = logic.get("type", "expression")
            logic["kind"] = _CUSTOM_KIND_ALIASES.get(kind, kind)
        logic["type"] = condition_type
        data["logic"] = logic
        return data

    @property
    def condition_type(self) -> ConditionType:
        return ConditionType(self.logic.type)


def _unique_condition_names(conditions: list[StepCondition]) -> list[StepCondition]:
    names = [c.name for c in conditions]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"duplicate condition names: {', '.join(duplicates)}")
    return conditions


# validation results are reported per condition name
StepConditions = Annotated[list[StepCondition], AfterValidator(_unique_condition_names)]


class StepAction(BaseModel):
    """What a step asks the agent to run, e.g. a named service call."""

    id: str = Field(default_factory=new_id)
    name: str
    action_type: str = "SERVICE_CALL"
    service: Optional[str] = None
    operation: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    sequence_order: int = 0


class WorkflowStep(BaseModel):
    id: str = Field(default_factory=new_id)
    role_id: str
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    sequence_number: int = Field(ge=0)
    step_type: str = "ACTION"
    behavioral_context: dict[str, Any] = Field(default_factory=dict)
    approach_guidance: dict[str, Any] = Field(default_factory=dict)
    conditions: StepConditions = Field(default_factory=list)
    actions: list[StepAction] = Field(default_factory=list)

    def pointer(self) -> "StepPointer":
        return StepPointer(id=self.id, name=self.name, sequence_number=self.sequence_number)


# ----------------------------------------------------------------------
# Execution state, one variant per phase


class StepPointer(BaseModel):
    id: str
    name: str
    sequence_number: int
    assigned_at: UTCDateTime = Field(default_factory=utcnow)


class ErrorInfo(BaseModel):
    message: str
    code: Optional[str] = None
    timestamp: UTCDateTime = Field(default_factory=utcnow)
    stack: Optional[str] = None


class InitializedState(BaseModel):
    phase: Literal["initialized"] = "initialized"
    current_step: Optional[StepPointer] = None
    current_context: dict[str, Any] = Field(default_factory=dict)
    progress_markers: list[str] = Field(default_factory=list)


class InProgressState(BaseModel):
    phase: Literal["in-progress"] = "in-progress"
    current_step: Optional[StepPointer] = None
    last_completed_step: Optional[StepPointer] = None
    progress_markers: list[str] = Field(default_factory=list)
    last_progress_update: Optional[UTCDateTime] = None


class CompletedState(BaseModel):
    phase: Literal["completed"] = "completed"
    completed_at: UTCDateTime = Field(default_factory=utcnow)
    last_completed_step: Optional[StepPointer] = None


class FailedState(BaseModel):
    phase: Literal["failed"] = "failed"
    failed_at: UTCDateTime = Field(default_factory=utcnow)
    current_step: Optional[StepPointer] = None
    error: Optional[ErrorInfo] = None


class PausedState(BaseModel):
    phase: Literal["paused"] = "paused"
    paused_at: UTCDateTime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    current_step: Optional[StepPointer] = None


ExecutionState = Annotated[
    Union[InitializedState, InProgressState, CompletedState, FailedState, PausedState],
    Field(discriminator="phase"),
]


class WorkflowExecution(BaseModel):
    """One run of a task through the role pipeline."""

    id: str = Field(default_factory=new_id)
    task_id: Optional[str] = None
    current_role_id: str
    current_step_id: Optional[str] = None
    execution_mode: ExecutionMode = ExecutionMode.GUIDED
    execution_state: ExecutionState = Field(default_factory=InitializedState)
    execution_context: dict[str, Any] = Field(default_factory=dict)
    steps_completed: int = 0
    total_steps: int = 0
    progress_percentage: float = 0
    recovery_attempts: int = 0
    max_recovery_attempts: int = 3
    last_error: Optional[ErrorInfo] = None
    started_at: UTCDateTime = Field(default_factory=utcnow)
    completed_at: Optional[UTCDateTime] = None
    updated_at: UTCDateTime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def phase(self) -> ExecutionPhase:
        return ExecutionPhase(self.execution_state.phase)

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


# ----------------------------------------------------------------------
# Step attempts


class ProgressData(BaseModel):
    """Structured payload kept on a progress record."""

    phase: str = "started"
    completed_actions: int = 0
    total_actions: int = 0
    last_result: Any = None
    action_results: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: Optional[UTCDateTime] = None


class ProgressErrorDetails(BaseModel):
    errors: list[str] = Field(default_factory=list)
    recovery_guidance: list[str] = Field(default_factory=list)


class WorkflowStepProgress(BaseModel):
    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    role_id: str
    task_id: Optional[str] = None
    status: StepStatus = StepStatus.NOT_STARTED
    started_at: Optional[UTCDateTime] = None
    completed_at: Optional[UTCDateTime] = None
    failed_at: Optional[UTCDateTime] = None
    duration: Optional[float] = None
    result: Optional[StepResult] = None
    execution_data: ProgressData = Field(default_factory=ProgressData)
    error_details: Optional[ProgressErrorDetails] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Plans and subtasks


class SubtaskStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    NEEDS_REVIEW = "needs-review"
    NEEDS_CHANGES = "needs-changes"
    COMPLETED = "completed"


class ImplementationPlan(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    overview: Optional[str] = None
    approach: Optional[str] = None
    created_by: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)


class Subtask(BaseModel):
    id: str = Field(default_factory=new_id)
    plan_id: str
    task_id: str
    name: str
    description: Optional[str] = None
    status: SubtaskStatus = SubtaskStatus.NOT_STARTED
    sequence_number: int = 0
    batch_id: Optional[str] = None
    batch_title: Optional[str] = None
    started_at: Optional[UTCDateTime] = None
    completed_at: Optional[UTCDateTime] = None
    completion_evidence: dict[str, Any] = Field(default_factory=dict)
