"""Lifecycle of individual step attempts."""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..errors import InvalidInputError, NotFoundError
from ..models import (
    ProgressData,
    ProgressErrorDetails,
    StepResult,
    StepStatus,
    WorkflowStepProgress,
)
from ..persistence.repository import WorkflowStore
from ..utils.clock import utcnow
from ..utils.numbers import as_count, round_half_up

logger = logging.getLogger(__name__)

RECOVERY_GUIDANCE = [
    "Review error message details",
    "Check prerequisites are met",
    "Retry the operation",
    "Get help if issue persists",
]


class StepProgressTracker:
    """Record start, progress, completion and failure of step attempts.

    Each attempt is its own record: ``NOT_STARTED -> IN_PROGRESS ->
    COMPLETED | FAILED``. Earlier attempts are never modified once closed.
    """

    service = "step_progress"

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    async def start_step(
        self,
        step_id: str,
        execution_id: str,
        task_id: Optional[str] = None,
        role_id: Optional[str] = None,
    ) -> WorkflowStepProgress:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Execution {execution_id} not found",
                service=self.service,
                operation="start_step",
                context={"step_id": step_id},
            )
        step = await self.store.get_step(step_id)
        if step is None:
            raise NotFoundError(
                f"Step {step_id} not found",
                service=self.service,
                operation="start_step",
                context={"execution_id": execution_id},
            )

        open_attempts = await self.store.list_progress(
            execution_id=execution_id, step_id=step_id, status=StepStatus.IN_PROGRESS, limit=1
        )
        if open_attempts:
            return open_attempts[0]

        record = WorkflowStepProgress(
            execution_id=execution_id,
            step_id=step_id,
            role_id=role_id or execution.current_role_id,
            task_id=task_id or execution.task_id,
            status=StepStatus.IN_PROGRESS,
            started_at=utcnow(),
            execution_data=ProgressData(phase="started", total_actions=len(step.actions)),
        )
        record = await self.store.save_progress(record)
        logger.info(f"Step {step.name} started for execution {execution_id}")
        return record

    async def _open_attempt(
        self, step_id: str, execution_id: Optional[str], operation: str
    ) -> WorkflowStepProgress:
        records = await self.store.list_progress(
            step_id=step_id, execution_id=execution_id, limit=1
        )
        if not records:
            raise NotFoundError(
                "No progress record found for step",
                service=self.service,
                operation=operation,
                context={"step_id": step_id, "execution_id": execution_id},
            )
        latest = records[0]
        if latest.status != StepStatus.IN_PROGRESS:
            raise InvalidInputError(
                f"Step attempt is {latest.status.value}, not IN_PROGRESS",
                service=self.service,
                operation=operation,
                context={"step_id": step_id, "progress_id": latest.id},
            )
        return latest

    async def update_progress(
        self,
        step_id: str,
        completed_actions: int,
        total_actions: Optional[int] = None,
        last_result: Any = None,
        execution_id: Optional[str] = None,
    ) -> WorkflowStepProgress:
        completed_actions = as_count(completed_actions, "completed_actions", "update_progress")
        if total_actions is not None:
            total_actions = as_count(total_actions, "total_actions", "update_progress")
        record = await self._open_attempt(step_id, execution_id, "update_progress")
        data = record.execution_data.model_copy(
            update={
                "phase": "in-progress",
                "completed_actions": completed_actions,
                "total_actions": (
                    total_actions if total_actions is not None else record.execution_data.total_actions
                ),
                "last_result": last_result,
                "updated_at": utcnow(),
            }
        )
        record.execution_data = data
        return await self.store.save_progress(record)

    async def complete_step(
        self,
        step_id: str,
        result: StepResult = StepResult.SUCCESS,
        action_results: Optional[list[dict[str, Any]]] = None,
        duration: Optional[float] = None,
        execution_id: Optional[str] = None,
    ) -> WorkflowStepProgress:
        record = await self._open_attempt(step_id, execution_id, "complete_step")
        now = utcnow()
        if duration is None and record.started_at is not None:
            duration = (now - record.started_at).total_seconds() * 1000
        action_results = list(action_results or [])

        record.status = StepStatus.COMPLETED
        record.completed_at = now
        record.duration = duration
        record.result = StepResult(result)
        record.execution_data = record.execution_data.model_copy(
            update={
                "phase": "completed",
                "action_results": action_results,
                "completed_actions": max(record.execution_data.completed_actions, len(action_results)),
                "updated_at": now,
            }
        )
        record = await self.store.save_progress(record)
        logger.info(f"Step {step_id} completed ({record.result.value}) in execution {record.execution_id}")
        return record

    async def fail_step(
        self,
        step_id: str,
        errors: list[str],
        action_results: Optional[list[dict[str, Any]]] = None,
        execution_id: Optional[str] = None,
    ) -> WorkflowStepProgress:
        record = await self._open_attempt(step_id, execution_id, "fail_step")
        now = utcnow()
        record.status = StepStatus.FAILED
        record.failed_at = now
        record.result = StepResult.FAILURE
        record.error_details = ProgressErrorDetails(
            errors=list(errors), recovery_guidance=list(RECOVERY_GUIDANCE)
        )
        record.execution_data = record.execution_data.model_copy(
            update={
                "phase": "failed",
                "action_results": list(action_results or []),
                "updated_at": now,
            }
        )
        record = await self.store.save_progress(record)
        logger.info(f"Step {step_id} failed in execution {record.execution_id}: {'; '.join(errors)}")
        return record

    async def get_role_progress_summary(self, role_id: str) -> dict[str, Any]:
        """Aggregate all attempts recorded for a role.

        ``success_rate`` is the share of finished attempts that completed.
        ``average_execution_time`` is in milliseconds over completed attempts.
        """
        records = await self.store.list_progress(role_id=role_id)
        completed = [r for r in records if r.status == StepStatus.COMPLETED]
        failed = [r for r in records if r.status == StepStatus.FAILED]
        in_progress = [r for r in records if r.status == StepStatus.IN_PROGRESS]

        durations = [r.duration for r in completed if r.duration is not None]
        average = round_half_up(sum(durations) / len(durations)) if durations else 0
        finished = len(completed) + len(failed)
        success_rate = round_half_up(len(completed) / finished * 100, 1) if finished else 0
        return {
            "role_id": role_id,
            "total_steps": len(records),
            "completed_steps": len(completed),
            "failed_steps": len(failed),
            "in_progress_steps": len(in_progress),
            "average_execution_time": average,
            "success_rate": success_rate,
        }
