from .models import (
    ExecutionRow,
    PlanRow,
    RoleRow,
    StepProgressRow,
    StepRow,
    SubtaskRow,
    TaskRow,
)
from .workflow_db import WorkflowDB, normalize_database_url

__all__ = [
    "TaskRow",
    "RoleRow",
    "StepRow",
    "ExecutionRow",
    "StepProgressRow",
    "PlanRow",
    "SubtaskRow",
    "WorkflowDB",
    "normalize_database_url",
]
