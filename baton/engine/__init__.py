"""Workflow execution engine components."""

from .analytics import ProgressAggregator
from .batches import BatchTracker, SubtaskStatusUpdate, derive_task_status
from .bootstrap import attach_task, bootstrap_workflow
from .execution import (
    VALID_TRANSITIONS,
    ExecutionPatch,
    ExecutionStateMachine,
    RetryDecision,
    validate_phase_transition,
)
from .progress import RECOVERY_GUIDANCE, StepProgressTracker
from .sequencer import StepSequencer
from .service import WorkflowEngine

__all__ = [
    "BatchTracker",
    "ExecutionPatch",
    "ExecutionStateMachine",
    "ProgressAggregator",
    "RECOVERY_GUIDANCE",
    "RetryDecision",
    "StepProgressTracker",
    "StepSequencer",
    "SubtaskStatusUpdate",
    "VALID_TRANSITIONS",
    "WorkflowEngine",
    "attach_task",
    "bootstrap_workflow",
    "derive_task_status",
    "validate_phase_transition",
]
