"""Subtask, batch and plan completion tracking.

A batch is not stored on its own: it is the set of subtasks of a plan that
share a ``batch_id``. It is complete iff all of them are completed; a plan is
complete iff every subtask under it is.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import DataIntegrityError, InvalidInputError, NotFoundError
from ..models import ImplementationPlan, Subtask, SubtaskStatus, TaskStatus
from ..persistence.repository import WorkflowStore
from ..utils.clock import utcnow
from ..utils.numbers import calculate_percentage
from .analytics import ProgressAggregator

logger = logging.getLogger(__name__)

# first match wins when not every subtask is completed
_STATUS_PRECEDENCE = (
    (SubtaskStatus.NEEDS_CHANGES, TaskStatus.NEEDS_CHANGES),
    (SubtaskStatus.NEEDS_REVIEW, TaskStatus.NEEDS_REVIEW),
    (SubtaskStatus.IN_PROGRESS, TaskStatus.IN_PROGRESS),
)


class SubtaskStatusUpdate(BaseModel):
    subtask_id: str
    status: SubtaskStatus
    completion_evidence: dict[str, Any] = Field(default_factory=dict)


def derive_task_status(breakdown: dict[str, int]) -> str:
    """Task status implied by a plan's subtask status counts."""
    total = breakdown.get("total", 0)
    if total and breakdown.get(SubtaskStatus.COMPLETED.value, 0) == total:
        return TaskStatus.COMPLETED.value
    for subtask_status, task_status in _STATUS_PRECEDENCE:
        if breakdown.get(subtask_status.value, 0) > 0:
            return task_status.value
    if breakdown.get(SubtaskStatus.COMPLETED.value, 0) > 0:
        return TaskStatus.IN_PROGRESS.value
    return TaskStatus.NOT_STARTED.value


class BatchTracker:
    service = "batches"

    def __init__(self, store: WorkflowStore, aggregator: Optional[ProgressAggregator] = None) -> None:
        self.store = store
        self.aggregator = aggregator or ProgressAggregator()

    async def _plan(self, task_id: str, operation: str, store: Optional[WorkflowStore] = None) -> ImplementationPlan:
        plan = await (store or self.store).get_plan_for_task(task_id)
        if plan is None:
            raise NotFoundError(
                f"Implementation plan not found for task {task_id}",
                service=self.service,
                operation=operation,
                context={"task_id": task_id},
            )
        return plan

    # ------------------------------------------------------------------
    async def check_batch_status(self, task_id: str, batch_id: str) -> dict[str, Any]:
        plan = await self._plan(task_id, "check_batch_status")
        return await self._batch_status(self.store, plan, batch_id)

    async def _batch_status(
        self, store: WorkflowStore, plan: ImplementationPlan, batch_id: str
    ) -> dict[str, Any]:
        subtasks = await store.list_subtasks(plan_id=plan.id, batch_id=batch_id)
        if not subtasks:
            raise NotFoundError(
                f"No subtasks found for batch ID {batch_id}",
                service=self.service,
                operation="check_batch_status",
                context={"task_id": plan.task_id, "batch_id": batch_id},
            )
        completed = [s for s in subtasks if s.status == SubtaskStatus.COMPLETED]
        pending = [s for s in subtasks if s.status != SubtaskStatus.COMPLETED]
        summary = self.aggregator.summarize_batch(subtasks)
        return {
            "batch_id": batch_id,
            "batch_title": next((s.batch_title for s in subtasks if s.batch_title), None),
            "is_complete": len(completed) == len(subtasks),
            "total_subtasks_in_batch": len(subtasks),
            "completed_subtasks_in_batch": len(completed),
            "pending_subtasks": [
                {"id": s.id, "name": s.name, "status": s.status.value} for s in pending
            ],
            "files_modified": _files_modified(completed),
            "efficiency": summary["efficiency"],
            "average_completion_time": summary["average_completion_time"],
        }

    # ------------------------------------------------------------------
    async def update_subtask_status(
        self,
        task_id: str,
        subtask_id: str,
        status: Union[SubtaskStatus, str],
        completion_evidence: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        update = self._parse_updates(
            [{"subtask_id": subtask_id, "status": status, "completion_evidence": completion_evidence or {}}],
            "update_subtask_status",
        )[0]
        result = await self.update_subtask_statuses(task_id, [update])
        subtask = result["updated"][0]
        return {
            "subtask": subtask,
            "batch_status": result["batches"].get(subtask["batch_id"]) if subtask["batch_id"] else None,
            "plan_complete": result["plan_complete"],
            "plan_status_updated": result["plan_complete"],
        }

    async def update_subtask_statuses(
        self,
        task_id: str,
        updates: Iterable[Union[SubtaskStatusUpdate, dict[str, Any]]],
    ) -> dict[str, Any]:
        """Apply all updates in one transaction, then recompute completion."""
        parsed = self._parse_updates(list(updates), "update_subtask_statuses")
        if not parsed:
            raise InvalidInputError(
                "At least one subtask update is required",
                service=self.service,
                operation="update_subtask_statuses",
            )

        async with self.store.transaction() as tx:
            plan = await self._plan(task_id, "update_subtask_statuses", tx)
            updated: list[Subtask] = []
            for item in parsed:
                subtask = await self._linked_subtask(tx, plan, item.subtask_id)
                updated.append(await tx.save_subtask(_apply_status(subtask, item)))

            batch_ids = sorted({s.batch_id for s in updated if s.batch_id})
            batches = {b: await self._batch_status(tx, plan, b) for b in batch_ids}
            all_subtasks = await tx.list_subtasks(plan_id=plan.id)

        plan_complete = bool(all_subtasks) and all(
            s.status == SubtaskStatus.COMPLETED for s in all_subtasks
        )
        for batch_id, batch in batches.items():
            if batch["is_complete"]:
                logger.info(f"Batch {batch_id} of task {task_id} is complete")
        if plan_complete:
            logger.info(f"All subtasks of plan {plan.id} completed")
        return {
            "updated": [s.model_dump(mode="json") for s in updated],
            "batches": batches,
            "plan_complete": plan_complete,
        }

    def _parse_updates(self, updates: list[Any], operation: str) -> list[SubtaskStatusUpdate]:
        try:
            return [
                u if isinstance(u, SubtaskStatusUpdate) else SubtaskStatusUpdate.model_validate(u)
                for u in updates
            ]
        except ValidationError as exc:
            raise InvalidInputError(
                "Invalid subtask update",
                service=self.service,
                operation=operation,
                context={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    async def _linked_subtask(
        self, store: WorkflowStore, plan: ImplementationPlan, subtask_id: str
    ) -> Subtask:
        subtask = await store.get_subtask(subtask_id)
        if subtask is None:
            raise NotFoundError(
                f"Subtask {subtask_id} not found",
                service=self.service,
                operation="update_subtask_status",
            )
        if subtask.task_id != plan.task_id or subtask.plan_id != plan.id:
            raise DataIntegrityError(
                f"Subtask {subtask_id} does not belong to task {plan.task_id}",
                service=self.service,
                operation="update_subtask_status",
                context={
                    "subtask_task_id": subtask.task_id,
                    "subtask_plan_id": subtask.plan_id,
                    "plan_id": plan.id,
                },
            )
        return subtask

    # ------------------------------------------------------------------
    async def get_plan_status_breakdown(self, task_id: str) -> dict[str, Any]:
        plan = await self._plan(task_id, "get_plan_status_breakdown")
        subtasks = await self.store.list_subtasks(plan_id=plan.id)
        breakdown: dict[str, Any] = {status.value: 0 for status in SubtaskStatus}
        for subtask in subtasks:
            breakdown[subtask.status.value] += 1
        breakdown["total"] = len(subtasks)
        breakdown["completion_percentage"] = calculate_percentage(
            breakdown[SubtaskStatus.COMPLETED.value], len(subtasks)
        )
        return breakdown

    async def sync_task_status(self, task_id: str) -> str:
        """Set the task status from its plan's subtasks; returns the status."""
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(
                f"Task {task_id} not found",
                service=self.service,
                operation="sync_task_status",
            )
        status = derive_task_status(await self.get_plan_status_breakdown(task_id))
        if task.status != status:
            task.status = status
            task.updated_at = utcnow()
            await self.store.save_task(task)
            logger.info(f"Task {task_id} status synced to {status}")
        return status


def _apply_status(subtask: Subtask, update: SubtaskStatusUpdate) -> Subtask:
    now = utcnow()
    subtask.status = update.status
    if update.status != SubtaskStatus.NOT_STARTED and subtask.started_at is None:
        subtask.started_at = now
    if update.status == SubtaskStatus.COMPLETED:
        subtask.completed_at = subtask.completed_at or now
    else:
        subtask.completed_at = None
    if update.completion_evidence:
        subtask.completion_evidence = {**subtask.completion_evidence, **update.completion_evidence}
    return subtask


def _files_modified(subtasks: Iterable[Subtask]) -> list[str]:
    files: list[str] = []
    for subtask in subtasks:
        for name in subtask.completion_evidence.get("files_modified", []) or []:
            if name not in files:
                files.append(name)
    return files
