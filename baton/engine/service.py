"""Facade exposing engine operations with plain structured inputs/outputs."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel

from ..conditions import ConditionContext, ConditionEvaluator
from ..conditions.evaluator import GitClientFactory
from ..config import BatonConfig
from ..errors import (
    BatonError,
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
    RecoverableExecutionError,
)
from ..models import StepResult, StepStatus
from ..persistence.repository import WorkflowStore
from .analytics import ProgressAggregator
from .batches import BatchTracker
from .bootstrap import attach_task, bootstrap_workflow
from .execution import ExecutionStateMachine
from .progress import StepProgressTracker
from .sequencer import StepSequencer

logger = logging.getLogger(__name__)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


class WorkflowEngine:
    """Wires sequencer, evaluator, tracker, state machine and aggregator."""

    def __init__(
        self,
        store: WorkflowStore,
        config: Optional[BatonConfig] = None,
        git_client_factory: Optional[GitClientFactory] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.store = store
        self.config = config or BatonConfig()
        self.sequencer = StepSequencer(store)
        self.evaluator = ConditionEvaluator(
            store, self.config.conditions, git_client_factory=git_client_factory, environ=environ
        )
        self.tracker = StepProgressTracker(store)
        self.machine = ExecutionStateMachine(store, self.config.execution, self.sequencer)
        self.aggregator = ProgressAggregator(self.config.analytics)
        self.batches = BatchTracker(store, self.aggregator)

    # ------------------------------------------------------------------
    # executions

    async def create_execution(
        self,
        role: str,
        task_id: Optional[str] = None,
        execution_mode: Optional[str] = None,
        execution_context: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        execution = await self.machine.create_execution(
            role, task_id=task_id, execution_mode=execution_mode, execution_context=execution_context
        )
        return _dump(execution)

    async def get_execution(
        self, execution_id: Optional[str] = None, task_id: Optional[str] = None
    ) -> dict[str, Any]:
        if (execution_id is None) == (task_id is None):
            raise InvalidInputError(
                "Exactly one of execution_id or task_id is required",
                service="engine",
                operation="get_execution",
            )
        if execution_id is not None:
            return _dump(await self.machine.get_execution(execution_id))
        return _dump(await self.machine.get_execution_by_task_id(task_id))

    async def update_execution(self, execution_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return _dump(await self.machine.update_execution(execution_id, patch))

    async def update_execution_progress(
        self, execution_id: str, steps_completed: int, total_steps: Optional[int] = None
    ) -> dict[str, Any]:
        return _dump(await self.machine.update_progress(execution_id, steps_completed, total_steps))

    async def complete_execution(self, execution_id: str) -> dict[str, Any]:
        execution = await self.machine.complete_execution(execution_id)
        role = await self.store.get_role(execution.current_role_id)
        return {
            "execution": _dump(execution),
            "summary": self.aggregator.generate_completion_summary(
                execution, final_role=role.name if role else None
            ),
        }

    async def get_active_executions(self) -> list[dict[str, Any]]:
        return _dump(await self.machine.get_active_executions())

    async def handle_execution_error(self, execution_id: str, error: Any) -> dict[str, Any]:
        return _dump(await self.machine.handle_execution_error(execution_id, error))

    async def pause_execution(self, execution_id: str, reason: Optional[str] = None) -> dict[str, Any]:
        return _dump(await self.machine.pause_execution(execution_id, reason))

    async def resume_execution(self, execution_id: str) -> dict[str, Any]:
        return _dump(await self.machine.resume_execution(execution_id))

    async def transition_role(
        self, execution_id: str, role: str, handoff_message: Optional[str] = None
    ) -> dict[str, Any]:
        return _dump(await self.machine.transition_role(execution_id, role, handoff_message))

    async def bootstrap_workflow(
        self,
        initial_role: str = "boomerang",
        execution_mode: Optional[str] = None,
        execution_context: Optional[dict[str, Any]] = None,
        task_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        return await bootstrap_workflow(
            self.machine, initial_role, execution_mode, execution_context, task_data
        )

    async def attach_task(self, execution_id: str, task: dict[str, Any]) -> dict[str, Any]:
        return _dump(await attach_task(self.machine, execution_id, task))

    # ------------------------------------------------------------------
    # steps

    async def get_next_available_step(
        self, execution_id: Optional[str] = None, task_id: Optional[str] = None, role: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        if execution_id is not None:
            execution = await self.machine.get_execution(execution_id)
            role_id = execution.current_role_id
            task_id = execution.task_id
        elif role is not None:
            role_id = (await self.machine.resolve_role(role)).id
        else:
            raise InvalidInputError(
                "execution_id, or task_id with role, is required",
                service="engine",
                operation="get_next_available_step",
            )
        step = await self.sequencer.next_available_step(task_id, role_id, execution_id=execution_id)
        return _dump(step) if step else None

    async def _condition_context(self, execution_id: str, step_id: str) -> ConditionContext:
        execution = await self.machine.get_execution(execution_id)
        return ConditionContext(
            task_id=execution.task_id,
            role_id=execution.current_role_id,
            step_id=step_id,
            execution_id=execution.id,
            project_path=execution.execution_context.get("project_path") or self.config.project_path,
            data=execution.execution_context,
        )

    async def validate_step_conditions(
        self, step_id: str, execution_id: str, extra_context: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        step = await self.store.get_step(step_id)
        if step is None:
            raise NotFoundError(
                f"Step {step_id} not found", service="engine", operation="validate_step_conditions"
            )
        context = await self._condition_context(execution_id, step_id)
        if extra_context:
            context.data = {**context.data, **extra_context}
        validation = await self.evaluator.validate_all(step.conditions, context)
        return validation.model_dump(mode="json")

    async def execute_next_step(self, execution_id: str) -> dict[str, Any]:
        """Resolve, gate and start the next step of the execution's role.

        Returns ``{"status": "role_complete"}`` when the role has no open
        steps; the caller decides on a role transition.
        """
        execution = await self.machine.get_execution(execution_id)
        self.machine.ensure_active(execution, "execute_next_step")
        step = await self.sequencer.next_available_step(
            execution.task_id, execution.current_role_id, execution_id=execution.id
        )
        if step is None:
            return {"status": "role_complete", "role_id": execution.current_role_id}

        validation = await self.evaluator.validate_all(
            step.conditions, await self._condition_context(execution_id, step.id)
        )
        if not validation.valid:
            raise PreconditionFailedError(
                f"Step '{step.name}' preconditions not met",
                errors=validation.errors,
                service="engine",
                operation="execute_next_step",
                context={"step_id": step.id},
            )

        async with self.store.transaction() as tx:
            tracker, machine = self._bound(tx)
            progress = await tracker.start_step(step.id, execution_id)
            await machine.mark_step_started(execution_id, step)
        return {
            "status": "started",
            "step": _dump(step),
            "progress": _dump(progress),
            "validation": validation.model_dump(mode="json"),
        }

    async def start_step(self, step_id: str, execution_id: str) -> dict[str, Any]:
        return _dump(await self.tracker.start_step(step_id, execution_id))

    async def update_step_progress(
        self,
        step_id: str,
        completed_actions: int,
        total_actions: Optional[int] = None,
        last_result: Any = None,
        execution_id: Optional[str] = None,
    ) -> dict[str, Any]:
        record = await self.tracker.update_progress(
            step_id, completed_actions, total_actions, last_result, execution_id=execution_id
        )
        return _dump(record)

    async def complete_step(
        self,
        execution_id: str,
        step_id: str,
        result: str = StepResult.SUCCESS.value,
        action_results: Optional[list[dict[str, Any]]] = None,
        duration: Optional[float] = None,
    ) -> dict[str, Any]:
        try:
            step_result = StepResult(result)
        except ValueError as exc:
            raise InvalidInputError(
                f"Unknown step result: {result}", service="engine", operation="complete_step"
            ) from exc
        self.machine.ensure_active(await self.machine.get_execution(execution_id), "complete_step")
        # the attempt only closes if the execution accepts the step
        async with self.store.transaction() as tx:
            tracker, machine = self._bound(tx)
            record = await tracker.complete_step(
                step_id, step_result, action_results, duration, execution_id=execution_id
            )
            execution = await machine.advance(execution_id, step_id)
        return {
            "progress": _dump(record),
            "execution": _dump(execution),
            "next_step_id": execution.current_step_id,
            "role_complete": execution.current_step_id is None,
            "metrics": self.aggregator.calculate_progress(execution),
        }

    async def fail_step(
        self,
        execution_id: str,
        step_id: str,
        errors: list[str],
        action_results: Optional[list[dict[str, Any]]] = None,
    ) -> dict[str, Any]:
        self.machine.ensure_active(await self.machine.get_execution(execution_id), "fail_step")
        error = RecoverableExecutionError(
            "; ".join(errors) or "Step failed",
            service="engine",
            operation="fail_step",
            context={"step_id": step_id},
        )
        async with self.store.transaction() as tx:
            tracker, machine = self._bound(tx)
            record = await tracker.fail_step(step_id, errors, action_results, execution_id=execution_id)
            decision = await machine.handle_execution_error(execution_id, error)
        return {"progress": _dump(record), "retry": _dump(decision)}

    def _bound(self, store: WorkflowStore) -> tuple[StepProgressTracker, ExecutionStateMachine]:
        """Tracker and state machine writing through ``store``."""
        machine = ExecutionStateMachine(store, self.config.execution, StepSequencer(store))
        return StepProgressTracker(store), machine

    # ------------------------------------------------------------------
    # reporting

    async def calculate_progress(self, execution_id: str) -> dict[str, Any]:
        execution = await self.machine.get_execution(execution_id)
        records = await self.store.list_progress(execution_id=execution_id, status=StepStatus.COMPLETED)
        durations = [r.duration for r in records if r.duration is not None]
        average = sum(durations) / len(durations) if durations else None
        return self.aggregator.calculate_progress(execution, average)

    async def generate_completion_summary(self, execution_id: str) -> dict[str, Any]:
        execution = await self.machine.get_execution(execution_id)
        role = await self.store.get_role(execution.current_role_id)
        return self.aggregator.generate_completion_summary(
            execution, final_role=role.name if role else None
        )

    async def get_role_progress_summary(self, role: str) -> dict[str, Any]:
        role_obj = await self.machine.resolve_role(role)
        summary = await self.tracker.get_role_progress_summary(role_obj.id)
        summary["role_name"] = role_obj.name
        return summary

    async def get_role_metrics(self) -> dict[str, Any]:
        roles = {r.id: r.name for r in await self.store.list_roles()}
        executions = await self.machine.get_active_executions()
        return self.aggregator.role_metrics(executions, roles)

    async def check_batch_status(self, task_id: str, batch_id: str) -> dict[str, Any]:
        return await self.batches.check_batch_status(task_id, batch_id)

    async def update_subtasks(
        self,
        task_id: str,
        subtask_id: Optional[str] = None,
        status: Optional[str] = None,
        updates: Optional[list[dict[str, Any]]] = None,
    ) -> dict[str, Any]:
        """Single update (``subtask_id`` + ``status``) or a batch (``updates``)."""
        single = subtask_id is not None or status is not None
        if single == (updates is not None):
            raise InvalidInputError(
                "Pass either subtask_id and status, or updates",
                service="engine",
                operation="update_subtasks",
            )
        if single:
            if subtask_id is None or status is None:
                raise InvalidInputError(
                    "subtask_id and status are both required",
                    service="engine",
                    operation="update_subtasks",
                )
            return await self.batches.update_subtask_status(task_id, subtask_id, status)
        return await self.batches.update_subtask_statuses(task_id, updates or [])

    # ------------------------------------------------------------------
    async def dispatch(self, operation: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Run ``operation`` and wrap the outcome in a success/error envelope."""
        handler: Optional[Callable[..., Awaitable[Any]]] = self._operations().get(operation)
        if handler is None:
            error = InvalidInputError(
                f"Unknown operation: {operation}", service="engine", operation=operation
            )
            return {"success": False, "error": error.to_dict()}
        params = params or {}
        try:
            inspect.signature(handler).bind(**params)
        except TypeError as exc:
            error = InvalidInputError(str(exc), service="engine", operation=operation)
            return {"success": False, "error": error.to_dict()}
        try:
            data = await handler(**params)
        except BatonError as exc:
            logger.info(f"{operation} failed with {exc.code}: {exc.message}")
            return {"success": False, "error": exc.to_dict()}
        except (TypeError, ValueError) as exc:
            # malformed parameter values that no component rejected itself
            logger.warning(f"{operation} rejected its parameters: {exc}")
            error = InvalidInputError(
                str(exc), service="engine", operation=operation, context={"params": sorted(params)}
            )
            return {"success": False, "error": error.to_dict()}
        return {"success": True, "data": data}

    def _operations(self) -> dict[str, Callable[..., Awaitable[Any]]]:
        return {
            "create_execution": self.create_execution,
            "get_execution": self.get_execution,
            "update_execution": self.update_execution,
            "update_execution_progress": self.update_execution_progress,
            "complete_execution": self.complete_execution,
            "get_active_executions": self.get_active_executions,
            "handle_execution_error": self.handle_execution_error,
            "pause_execution": self.pause_execution,
            "resume_execution": self.resume_execution,
            "transition_role": self.transition_role,
            "bootstrap_workflow": self.bootstrap_workflow,
            "attach_task": self.attach_task,
            "get_next_available_step": self.get_next_available_step,
            "validate_step_conditions": self.validate_step_conditions,
            "execute_next_step": self.execute_next_step,
            "start_step": self.start_step,
            "update_step_progress": self.update_step_progress,
            "complete_step": self.complete_step,
            "fail_step": self.fail_step,
            "calculate_progress": self.calculate_progress,
            "generate_completion_summary": self.generate_completion_summary,
            "get_role_progress_summary": self.get_role_progress_summary,
            "get_role_metrics": self.get_role_metrics,
            "check_batch_status": self.check_batch_status,
            "update_subtasks": self.update_subtasks,
        }
