"""Execution state machine.

An execution moves ``initialized -> in-progress -> completed``. ``paused`` and
``failed`` are side phases that return to ``in-progress``; ``completed`` is
terminal. Every write goes through the store's compare-and-swap on
``version``.
"""

from __future__ import annotations

import json
import logging
import traceback
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import ExecutionConfig
from ..errors import (
    ConcurrentUpdateError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from ..models import (
    CompletedState,
    ErrorInfo,
    ExecutionMode,
    ExecutionPhase,
    FailedState,
    InitializedState,
    InProgressState,
    PausedState,
    StepStatus,
    TaskStatus,
    WorkflowExecution,
    WorkflowRole,
    WorkflowStep,
)
from ..persistence.repository import WorkflowStore
from ..utils.clock import utcnow
from ..utils.numbers import as_count, clamp, round_half_up
from .sequencer import StepSequencer

logger = logging.getLogger(__name__)

P = ExecutionPhase

VALID_TRANSITIONS: dict[ExecutionPhase, frozenset[ExecutionPhase]] = {
    P.INITIALIZED: frozenset({P.IN_PROGRESS, P.PAUSED, P.FAILED, P.COMPLETED}),
    P.IN_PROGRESS: frozenset({P.PAUSED, P.FAILED, P.COMPLETED}),
    P.PAUSED: frozenset({P.IN_PROGRESS, P.FAILED, P.COMPLETED}),
    P.FAILED: frozenset({P.IN_PROGRESS}),
    P.COMPLETED: frozenset(),
}

_ADVANCE_ATTEMPTS = 3


def validate_phase_transition(from_phase: ExecutionPhase, to_phase: ExecutionPhase) -> None:
    """Raise ``InvalidTransitionError`` unless the change is allowed.

    Staying in the same non-terminal phase is always allowed.
    """
    if from_phase == to_phase and from_phase != P.COMPLETED:
        return
    if to_phase not in VALID_TRANSITIONS.get(from_phase, frozenset()):
        raise InvalidTransitionError(
            from_phase.value, to_phase.value, service="execution", operation="transition"
        )


class ExecutionPatch(BaseModel):
    """Fields a caller may replace on an execution.

    Nested structures are replaced wholesale, so pass the complete merged
    ``execution_context``.
    """

    model_config = ConfigDict(extra="forbid")

    current_role_id: Optional[str] = None
    current_step_id: Optional[str] = None
    execution_mode: Optional[ExecutionMode] = None
    execution_context: Optional[dict[str, Any]] = None
    execution_state: Optional[dict[str, Any]] = None
    steps_completed: Optional[int] = None
    total_steps: Optional[int] = None


class RetryDecision(BaseModel):
    can_retry: bool
    retry_count: int
    max_retries: int


class ExecutionStateMachine:
    """Owns the ``WorkflowExecution`` record."""

    service = "execution"

    def __init__(
        self,
        store: WorkflowStore,
        config: Optional[ExecutionConfig] = None,
        sequencer: Optional[StepSequencer] = None,
    ) -> None:
        self.store = store
        self.config = config or ExecutionConfig()
        self.sequencer = sequencer or StepSequencer(store)

    # ------------------------------------------------------------------
    # lookups

    async def resolve_role(self, role: str) -> WorkflowRole:
        """Find a role by id, falling back to its name."""
        found = await self.store.get_role(role) or await self.store.get_role_by_name(role)
        if found is None:
            raise NotFoundError(
                f"Role '{role}' not found",
                service=self.service,
                operation="resolve_role",
            )
        return found

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Workflow execution not found: {execution_id}",
                service=self.service,
                operation="get_execution",
                context={"execution_id": execution_id},
            )
        return execution

    async def get_execution_by_task_id(self, task_id: str) -> WorkflowExecution:
        executions = await self.store.list_executions(task_id=task_id)
        if not executions:
            raise NotFoundError(
                f"No workflow execution for task {task_id}",
                service=self.service,
                operation="get_execution_by_task_id",
                context={"task_id": task_id},
            )
        return executions[0]

    async def get_active_executions(self) -> list[WorkflowExecution]:
        return await self.store.list_executions(active_only=True)

    async def pipeline_step_count(self) -> int:
        """Number of steps defined across all roles."""
        return len(await self.store.list_steps())

    # ------------------------------------------------------------------
    # writes

    async def create_execution(
        self,
        role: str,
        task_id: Optional[str] = None,
        execution_mode: Optional[Union[ExecutionMode, str]] = None,
        execution_context: Optional[dict[str, Any]] = None,
    ) -> WorkflowExecution:
        role_obj = await self.resolve_role(role)
        if task_id is not None and await self.store.get_task(task_id) is None:
            raise NotFoundError(
                f"Task {task_id} not found",
                service=self.service,
                operation="create_execution",
            )
        context = dict(execution_context or {})
        self._check_context_size(context, "create_execution")

        first = await self.sequencer.first_step(role_obj.id)
        if first is None:
            logger.warning(f"Role {role_obj.name} has no steps; execution starts without a current step")

        try:
            mode = ExecutionMode(execution_mode or self.config.default_execution_mode)
        except ValueError as exc:
            raise InvalidInputError(
                f"Unknown execution mode: {execution_mode}",
                service=self.service,
                operation="create_execution",
            ) from exc

        execution = WorkflowExecution(
            task_id=task_id,
            current_role_id=role_obj.id,
            current_step_id=first.id if first else None,
            execution_mode=mode,
            execution_state=InitializedState(
                current_step=first.pointer() if first else None,
                current_context=context,
            ),
            execution_context=context,
            total_steps=await self.pipeline_step_count(),
            max_recovery_attempts=self.config.max_recovery_attempts,
        )
        execution = await self.store.create_execution(execution)
        logger.info(f"Execution {execution.id} created for role {role_obj.name} (task={task_id})")
        return execution

    async def update_execution(
        self, execution_id: str, patch: Union[ExecutionPatch, dict[str, Any]]
    ) -> WorkflowExecution:
        if not isinstance(patch, ExecutionPatch):
            try:
                patch = ExecutionPatch.model_validate(patch)
            except ValidationError as exc:
                raise InvalidInputError(
                    "Invalid execution patch",
                    service=self.service,
                    operation="update_execution",
                    context={"errors": exc.errors(include_url=False)},
                ) from exc
        changes = patch.model_dump(exclude_unset=True)

        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "update_execution")
        if "execution_context" in changes:
            self._check_context_size(changes["execution_context"] or {}, "update_execution")

        try:
            updated = WorkflowExecution.model_validate({**execution.model_dump(), **changes})
        except ValidationError as exc:
            raise InvalidInputError(
                "Invalid execution state",
                service=self.service,
                operation="update_execution",
                context={"errors": exc.errors(include_url=False)},
            ) from exc
        validate_phase_transition(execution.phase, updated.phase)
        if "steps_completed" in changes or "total_steps" in changes:
            self._apply_progress(updated, updated.steps_completed, updated.total_steps)
        if updated.phase == P.COMPLETED:
            updated.completed_at = updated.completed_at or utcnow()
        return await self.store.update_execution(updated)

    async def update_progress(
        self,
        execution_id: str,
        steps_completed: int,
        total_steps: Optional[int] = None,
    ) -> WorkflowExecution:
        """Store counters; the percentage is only recomputed for a known total."""
        steps_completed = as_count(steps_completed, "steps_completed", "update_progress")
        if total_steps is not None:
            total_steps = as_count(total_steps, "total_steps", "update_progress")
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "update_progress")
        self._apply_progress(execution, steps_completed, total_steps)
        return await self.store.update_execution(execution)

    def _apply_progress(
        self, execution: WorkflowExecution, steps_completed: int, total_steps: Optional[int]
    ) -> None:
        execution.steps_completed = max(steps_completed, 0)
        if total_steps:
            execution.total_steps = total_steps
            execution.progress_percentage = clamp(
                round_half_up(execution.steps_completed / total_steps * 100)
            )
        if isinstance(execution.execution_state, InProgressState):
            execution.execution_state.last_progress_update = utcnow()

    async def complete_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "complete_execution")
        validate_phase_transition(execution.phase, P.COMPLETED)

        now = utcnow()
        last_step = getattr(execution.execution_state, "last_completed_step", None)
        execution.completed_at = now
        execution.progress_percentage = self.config.completion_percentage
        execution.execution_state = CompletedState(completed_at=now, last_completed_step=last_step)
        execution = await self.store.update_execution(execution)
        logger.info(f"Execution {execution_id} completed")
        return execution

    async def handle_execution_error(
        self, execution_id: str, error: Union[BaseException, str]
    ) -> RetryDecision:
        """Record ``error`` against the retry budget and report whether to retry.

        The engine never retries by itself. Once the budget is spent the
        execution moves to ``failed``.
        """
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "handle_execution_error")

        attempts = execution.recovery_attempts + 1
        can_retry = attempts < execution.max_recovery_attempts
        execution.recovery_attempts = attempts
        execution.last_error = _error_info(error)
        if not can_retry and execution.phase != P.FAILED:
            validate_phase_transition(execution.phase, P.FAILED)
            execution.execution_state = FailedState(
                current_step=getattr(execution.execution_state, "current_step", None),
                error=execution.last_error,
            )
            logger.warning(
                f"Execution {execution_id} exhausted its recovery budget "
                f"({attempts}/{execution.max_recovery_attempts})"
            )
        await self.store.update_execution(execution)
        return RetryDecision(
            can_retry=can_retry,
            retry_count=attempts,
            max_retries=execution.max_recovery_attempts,
        )

    async def pause_execution(self, execution_id: str, reason: Optional[str] = None) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "pause_execution")
        validate_phase_transition(execution.phase, P.PAUSED)
        execution.execution_state = PausedState(
            reason=reason,
            current_step=getattr(execution.execution_state, "current_step", None),
        )
        logger.info(f"Execution {execution_id} paused: {reason or 'no reason given'}")
        return await self.store.update_execution(execution)

    async def resume_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "resume_execution")
        validate_phase_transition(execution.phase, P.IN_PROGRESS)
        execution.execution_state = InProgressState(
            current_step=getattr(execution.execution_state, "current_step", None),
            last_progress_update=utcnow(),
        )
        return await self.store.update_execution(execution)

    async def mark_step_started(self, execution_id: str, step: WorkflowStep) -> WorkflowExecution:
        """Point the execution at ``step`` and enter ``in-progress``."""
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "mark_step_started")
        validate_phase_transition(execution.phase, P.IN_PROGRESS)
        state = execution.execution_state
        execution.current_step_id = step.id
        execution.execution_state = InProgressState(
            current_step=step.pointer(),
            last_completed_step=getattr(state, "last_completed_step", None),
            progress_markers=list(getattr(state, "progress_markers", [])),
            last_progress_update=getattr(state, "last_progress_update", None),
        )
        return await self.store.update_execution(execution)

    async def transition_role(
        self, execution_id: str, role: str, handoff_message: Optional[str] = None
    ) -> WorkflowExecution:
        """Hand the execution over to the first step of another role.

        The handoff is appended to ``execution_context["role_transitions"]``
        and the linked task's ``owner_role`` follows the execution. A role
        cannot hand off while one of its step attempts is still open.
        """
        role_obj = await self.resolve_role(role)
        execution = await self.get_execution(execution_id)
        self.ensure_active(execution, "transition_role")
        validate_phase_transition(execution.phase, P.IN_PROGRESS)
        if role_obj.id == execution.current_role_id:
            raise InvalidInputError(
                f"Execution {execution_id} is already in role {role_obj.name}",
                service=self.service,
                operation="transition_role",
            )
        open_attempts = await self.store.list_progress(
            execution_id=execution_id, role_id=execution.current_role_id, status=StepStatus.IN_PROGRESS
        )
        if open_attempts:
            raise InvalidInputError(
                f"Execution {execution_id} has {len(open_attempts)} open step attempt(s) in its current role",
                service=self.service,
                operation="transition_role",
                context={"step_ids": [r.step_id for r in open_attempts]},
            )

        previous = await self.store.get_role(execution.current_role_id)
        from_role = previous.name if previous else execution.current_role_id
        transitions = list(execution.execution_context.get("role_transitions", []))
        transitions.append(
            {
                "from_role": from_role,
                "to_role": role_obj.name,
                "transitioned_at": utcnow().isoformat(),
                "message": handoff_message or f"Handoff from {from_role} to {role_obj.name}",
            }
        )
        context = {**execution.execution_context, "role_transitions": transitions}
        self._check_context_size(context, "transition_role")

        first = await self.sequencer.first_step(role_obj.id)
        execution.current_role_id = role_obj.id
        execution.current_step_id = first.id if first else None
        execution.execution_context = context
        execution.execution_state = InProgressState(
            current_step=first.pointer() if first else None,
            last_completed_step=getattr(execution.execution_state, "last_completed_step", None),
            progress_markers=list(getattr(execution.execution_state, "progress_markers", [])),
            last_progress_update=utcnow(),
        )
        async with self.store.transaction() as tx:
            if execution.task_id is not None:
                task = await tx.get_task(execution.task_id)
                if task is not None:
                    task.owner_role = role_obj.name
                    task.updated_at = utcnow()
                    await tx.save_task(task)
            execution = await tx.update_execution(execution)
        logger.info(f"Execution {execution_id} moved from role {from_role} to {role_obj.name}")
        return execution

    async def advance(self, execution_id: str, completed_step_id: str) -> WorkflowExecution:
        """Fold a completed step into the execution.

        ``steps_completed`` is recounted from distinct completed steps, so a
        retry after a lost compare-and-swap cannot double count.
        """
        step = await self.store.get_step(completed_step_id)
        if step is None:
            raise NotFoundError(
                f"Step {completed_step_id} not found",
                service=self.service,
                operation="advance",
            )

        for attempt in range(_ADVANCE_ATTEMPTS):
            execution = await self.get_execution(execution_id)
            self.ensure_active(execution, "advance")
            validate_phase_transition(execution.phase, P.IN_PROGRESS)

            completed = await self.store.list_progress(
                execution_id=execution_id, status=StepStatus.COMPLETED
            )
            steps_completed = len({record.step_id for record in completed})
            next_step = await self.sequencer.next_available_step(
                execution.task_id, step.role_id, execution_id=execution.id
            )

            markers = list(getattr(execution.execution_state, "progress_markers", []))
            if step.name not in markers:
                markers.append(step.name)
            execution.current_step_id = next_step.id if next_step else None
            execution.execution_state = InProgressState(
                current_step=next_step.pointer() if next_step else None,
                last_completed_step=step.pointer(),
                progress_markers=markers,
            )
            self._apply_progress(
                execution, steps_completed, execution.total_steps or await self.pipeline_step_count()
            )
            try:
                execution = await self.store.update_execution(execution)
            except ConcurrentUpdateError:
                if attempt == _ADVANCE_ATTEMPTS - 1:
                    raise
                logger.debug(f"Retrying advance of execution {execution_id} after concurrent update")
                continue
            break

        await self._mark_task_started(execution.task_id)
        return execution

    async def _mark_task_started(self, task_id: Optional[str]) -> None:
        if task_id is None:
            return
        task = await self.store.get_task(task_id)
        if task is not None and task.status == TaskStatus.NOT_STARTED.value:
            task.status = TaskStatus.IN_PROGRESS.value
            task.updated_at = utcnow()
            await self.store.save_task(task)

    # ------------------------------------------------------------------
    def ensure_active(self, execution: WorkflowExecution, operation: str) -> None:
        if execution.completed_at is not None:
            raise InvalidInputError(
                f"Execution {execution.id} is already completed",
                service=self.service,
                operation=operation,
                context={"execution_id": execution.id},
            )

    def _check_context_size(self, context: dict[str, Any], operation: str) -> None:
        size = len(json.dumps(context, default=str).encode("utf-8"))
        if size > self.config.max_context_bytes:
            raise InvalidInputError(
                f"Execution context too large ({size} bytes, max {self.config.max_context_bytes})",
                service=self.service,
                operation=operation,
            )


def _error_info(error: Union[BaseException, str]) -> ErrorInfo:
    if isinstance(error, BaseException):
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return ErrorInfo(
            message=getattr(error, "message", None) or str(error) or type(error).__name__,
            code=getattr(error, "code", None),
            stack=stack,
        )
    return ErrorInfo(message=str(error))
