from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ConditionResult(BaseModel):
    """Outcome of evaluating one condition."""

    valid: bool
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class ConditionValidation(BaseModel):
    """Outcome of evaluating all conditions of a step.

    ``errors`` only lists required conditions; ``details`` has every result.
    """

    valid: bool
    errors: list[str] = Field(default_factory=list)
    details: dict[str, ConditionResult] = Field(default_factory=dict)
