"""Role and step definitions loaded from YAML.

Roles are listed in pipeline order. Step sequence numbers default to the
position in the list (starting at 1). Seeding is an upsert keyed on role name
and step name, so it can be re-run after editing the file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import InvalidInputError
from .models import StepAction, StepConditions, WorkflowRole, WorkflowStep, new_id
from .persistence.repository import WorkflowStore

logger = logging.getLogger(__name__)


class StepDefinition(BaseModel):
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    sequence_number: Optional[int] = None
    step_type: str = "ACTION"
    behavioral_context: dict[str, Any] = Field(default_factory=dict)
    approach_guidance: dict[str, Any] = Field(default_factory=dict)
    conditions: StepConditions = Field(default_factory=list)
    actions: list[StepAction] = Field(default_factory=list)


class RoleDefinition(BaseModel):
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    steps: list[StepDefinition] = Field(default_factory=list)


class WorkflowDefinitions(BaseModel):
    roles: list[RoleDefinition] = Field(default_factory=list)


DEFAULT_DEFINITIONS_YAML = """
roles:
  - name: boomerang
    display_name: Boomerang
    description: Intake, task creation and final delivery
    steps:
      - name: gather_requirements
        step_type: ANALYSIS
        actions:
          - name: capture_task
            service: task
            operation: create
      - name: verify_repository
        step_type: VALIDATION
        conditions:
          - name: clean_tree
            required: false
            logic: {type: GIT_STATUS, require_clean_working_tree: true}
      - name: delegate_research
        step_type: ACTION
  - name: researcher
    display_name: Researcher
    steps:
      - name: investigate
        step_type: ANALYSIS
        conditions:
          - name: task_active
            logic: {type: TASK_STATUS, forbidden_statuses: [completed, cancelled]}
      - name: write_report
        step_type: ACTION
  - name: architect
    display_name: Architect
    steps:
      - name: review_research
        step_type: ANALYSIS
      - name: create_plan
        step_type: ACTION
        conditions:
          - name: research_reviewed
            logic: {type: PREVIOUS_STEP_COMPLETED, step_id: review_research}
      - name: define_batches
        step_type: ACTION
  - name: senior-developer
    display_name: Senior Developer
    steps:
      - name: implement_batch
        step_type: ACTION
      - name: verify_batch
        step_type: VALIDATION
  - name: code-review
    display_name: Code Review
    steps:
      - name: review_changes
        step_type: VALIDATION
      - name: record_verdict
        step_type: DECISION
  - name: integration-engineer
    display_name: Integration Engineer
    steps:
      - name: integrate
        step_type: ACTION
        conditions:
          - name: clean_before_merge
            required: false
            logic: {type: GIT_STATUS, require_clean_working_tree: true}
      - name: finalize
        step_type: ACTION
"""


def parse_definitions(data: Any) -> WorkflowDefinitions:
    try:
        return WorkflowDefinitions.model_validate(data or {})
    except ValidationError as exc:
        raise InvalidInputError(
            "Invalid workflow definitions",
            service="definitions",
            operation="parse_definitions",
            context={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def load_definitions(path: Optional[str | Path] = None) -> WorkflowDefinitions:
    """Load definitions from ``path``, or the built-in pipeline."""
    if path is None:
        return parse_definitions(yaml.safe_load(DEFAULT_DEFINITIONS_YAML))
    with open(path) as f:
        return parse_definitions(yaml.safe_load(f))


async def seed_definitions(store: WorkflowStore, definitions: WorkflowDefinitions) -> dict[str, int]:
    """Upsert roles and steps; returns counts of what was written."""
    roles_written = 0
    steps_written = 0
    async with store.transaction() as tx:
        for order, role_def in enumerate(definitions.roles, start=1):
            role = await tx.get_role_by_name(role_def.name) or WorkflowRole(name=role_def.name)
            role.display_name = role_def.display_name
            role.description = role_def.description
            role.pipeline_order = order
            await tx.save_role(role)
            roles_written += 1

            existing = {s.name: s for s in await tx.list_steps(role.id)}
            for position, step_def in enumerate(role_def.steps, start=1):
                fields = step_def.model_dump(exclude={"sequence_number", "conditions", "actions"})
                step = WorkflowStep(
                    id=existing[step_def.name].id if step_def.name in existing else new_id(),
                    role_id=role.id,
                    sequence_number=step_def.sequence_number or position,
                    conditions=step_def.conditions,
                    actions=step_def.actions,
                    **fields,
                )
                await tx.save_step(step)
                steps_written += 1
    logger.info(f"Seeded {roles_written} roles and {steps_written} steps")
    return {"roles": roles_written, "steps": steps_written}
