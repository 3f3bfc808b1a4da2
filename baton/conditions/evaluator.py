"""Step precondition evaluation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from ..config import ConditionConfig
from ..errors import ExternalToolError
from ..models import (
    ContextCheckLogic,
    FileExistsLogic,
    GitStatusLogic,
    PreviousStepLogic,
    StepCondition,
    StepStatus,
    TaskStatusLogic,
)
from ..persistence.repository import WorkflowStore
from .custom import CustomLogicEvaluator, resolve_path
from .git import GitClient, SubprocessGitClient, read_git_status
from .result import ConditionResult, ConditionValidation

logger = logging.getLogger(__name__)

GitClientFactory = Callable[[Optional[str]], GitClient]


class ConditionContext(BaseModel):
    """What a condition can see about the step being gated."""

    task_id: Optional[str] = None
    role_id: Optional[str] = None
    step_id: Optional[str] = None
    execution_id: Optional[str] = None
    project_path: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    def lookup(self) -> dict[str, Any]:
        values = dict(self.data)
        for key in ("task_id", "role_id", "step_id", "execution_id", "project_path"):
            value = getattr(self, key)
            if value is not None:
                values[key] = value
        return values


def has_path(data: Mapping[str, Any], path: str) -> bool:
    """True when every segment of the dotted ``path`` exists."""
    current: Any = data
    for key in path.split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        else:
            return False
    return True


class ConditionEvaluator:
    """Evaluate step conditions against the store, filesystem, git and env."""

    def __init__(
        self,
        store: WorkflowStore,
        config: Optional[ConditionConfig] = None,
        git_client_factory: Optional[GitClientFactory] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.store = store
        self.config = config or ConditionConfig()
        self.git_client_factory = git_client_factory or (
            lambda cwd: SubprocessGitClient(cwd, timeout=self.config.git_command_timeout)
        )
        self.custom = CustomLogicEvaluator(store, self.config, environ=environ)

    async def validate_all(
        self, conditions: Iterable[StepCondition], context: ConditionContext
    ) -> ConditionValidation:
        """Evaluate every condition; only required ones can fail validation."""
        errors: list[str] = []
        details: dict[str, ConditionResult] = {}
        for condition in conditions:
            result = await self.evaluate(condition, context)
            key = condition.name
            if key in details:
                key = f"{condition.name} ({condition.id})"
            details[key] = result
            if condition.required and not result.valid:
                errors.append(f"Condition '{condition.name}' failed: {result.reason}")
        return ConditionValidation(valid=not errors, errors=errors, details=details)

    async def evaluate(self, condition: StepCondition, context: ConditionContext) -> ConditionResult:
        logic = condition.logic
        try:
            if isinstance(logic, ContextCheckLogic):
                return self._context_check(logic, context)
            if isinstance(logic, FileExistsLogic):
                return await self._file_exists(logic, context)
            if isinstance(logic, TaskStatusLogic):
                return await self._task_status(logic, context)
            if isinstance(logic, GitStatusLogic):
                return await self._git_status(logic, context)
            if isinstance(logic, PreviousStepLogic):
                return await self._previous_step(logic, context)
            return await self.custom.evaluate(logic, context.project_path)
        except Exception as exc:
            logger.exception(f"Condition '{condition.name}' raised during evaluation")
            return ConditionResult(valid=False, reason=f"Evaluation error: {exc}")

    # ------------------------------------------------------------------
    def _context_check(self, logic: ContextCheckLogic, context: ConditionContext) -> ConditionResult:
        values = context.lookup()
        missing = [p for p in logic.required_properties if not has_path(values, p)]
        if missing:
            return ConditionResult(
                valid=False,
                reason=f"Missing required context properties: {', '.join(missing)}",
                details={"missing_properties": missing},
            )
        return ConditionResult(valid=True)

    async def _file_exists(self, logic: FileExistsLogic, context: ConditionContext) -> ConditionResult:
        missing: list[str] = []
        for name in logic.files:
            if not await asyncio.to_thread(resolve_path(name, context.project_path).is_file):
                missing.append(f"file: {name}")
        for name in logic.directories:
            if not await asyncio.to_thread(resolve_path(name, context.project_path).is_dir):
                missing.append(f"directory: {name}")
        if missing:
            return ConditionResult(
                valid=False,
                reason=f"Missing required items: {', '.join(missing)}",
                details={"missing_items": missing},
            )
        return ConditionResult(valid=True)

    async def _task_status(self, logic: TaskStatusLogic, context: ConditionContext) -> ConditionResult:
        task = await self.store.get_task(context.task_id) if context.task_id else None
        if task is None:
            return ConditionResult(valid=False, reason="Task not found")
        if logic.required_status and task.status != logic.required_status:
            return ConditionResult(
                valid=False,
                reason=f"Task status is '{task.status}', required '{logic.required_status}'",
                details={"status": task.status},
            )
        if task.status in logic.forbidden_statuses:
            return ConditionResult(
                valid=False,
                reason=f"Task status '{task.status}' is forbidden",
                details={"status": task.status},
            )
        return ConditionResult(valid=True, details={"status": task.status})

    async def _git_status(self, logic: GitStatusLogic, context: ConditionContext) -> ConditionResult:
        client = self.git_client_factory(context.project_path)
        try:
            status = await read_git_status(client)
        except ExternalToolError as exc:
            logger.warning(f"Git status check failed: {exc.message}")
            return ConditionResult(valid=False, reason=f"Git status check failed: {exc.message}")

        details = status.model_dump()
        if logic.require_clean_working_tree and not status.is_clean:
            return ConditionResult(valid=False, reason="Working tree is not clean", details=details)
        if logic.require_branch and status.current_branch != logic.require_branch:
            return ConditionResult(
                valid=False,
                reason=f"Current branch is '{status.current_branch}', required '{logic.require_branch}'",
                details=details,
            )
        return ConditionResult(valid=True, details=details)

    async def _previous_step(self, logic: PreviousStepLogic, context: ConditionContext) -> ConditionResult:
        if not logic.step_id:
            return ConditionResult(valid=True)
        role_id = logic.role_id or context.role_id
        step_id = await self._resolve_step_id(logic.step_id, role_id)

        scope: dict[str, Any] = {"task_id": context.task_id}
        if context.task_id is None:
            scope = {"execution_id": context.execution_id}
        completed = await self.store.list_progress(
            step_id=step_id, role_id=role_id, status=StepStatus.COMPLETED, limit=1, **scope
        )
        if not completed:
            return ConditionResult(
                valid=False,
                reason=f"Previous step '{logic.step_id}' not completed",
                details={"step_id": step_id, "role_id": role_id},
            )
        return ConditionResult(valid=True, details={"progress_id": completed[0].id})

    async def _resolve_step_id(self, reference: str, role_id: Optional[str]) -> str:
        # definitions may name the dependency instead of using its generated id
        if await self.store.get_step(reference) is not None or role_id is None:
            return reference
        for step in await self.store.list_steps(role_id):
            if step.name == reference:
                return step.id
        return reference
