"""Derived progress metrics and summaries.

Nothing here persists or raises on bad data: missing or malformed numbers
become 0, unusable timestamps become "now", and durations fall back to
``AnalyticsConfig.default_duration``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel

from ..config import AnalyticsConfig
from ..models import WorkflowExecution
from ..utils.clock import coerce_datetime, format_duration, utcnow
from ..utils.numbers import calculate_percentage, round_half_up, safe_number

logger = logging.getLogger(__name__)

ExecutionLike = Union[WorkflowExecution, Mapping[str, Any]]
SubtaskLike = Union[BaseModel, Mapping[str, Any]]

COMPLETION_RECOMMENDATIONS = [
    "Review the completion summary and quality metrics",
    "Archive execution artifacts and notes",
    "Share learnings with the team",
    "Update documentation for future reference",
    "Plan follow-up work if needed",
]


def _as_dict(item: Any) -> dict[str, Any]:
    if isinstance(item, BaseModel):
        return item.model_dump()
    if isinstance(item, Mapping):
        return dict(item)
    return {}


def _value(data: Mapping[str, Any], key: str) -> Any:
    value = data.get(key)
    # enums dump as themselves in python mode
    return getattr(value, "value", value)


class ProgressAggregator:
    """Pure derivation layer over executions and subtasks."""

    def __init__(self, config: Optional[AnalyticsConfig] = None) -> None:
        self.config = config or AnalyticsConfig()

    # ------------------------------------------------------------------
    def format_time_estimate(
        self, remaining_steps: Any, average_step_ms: Optional[float] = None
    ) -> str:
        remaining = int(safe_number(remaining_steps))
        if remaining <= self.config.near_completion_threshold:
            return "Near completion"
        average = safe_number(average_step_ms)
        if average > 0:
            return f"~{format_duration(remaining * average)} remaining"
        return f"{remaining} steps remaining"

    def calculate_progress(
        self, execution: ExecutionLike, average_step_ms: Optional[float] = None
    ) -> dict[str, Any]:
        data = _as_dict(execution)
        completed = int(safe_number(data.get("steps_completed")))
        total = int(safe_number(data.get("total_steps")))
        return {
            "percentage": calculate_percentage(completed, total, self.config.rounding_precision),
            "steps_completed": completed,
            "total_steps": total,
            "estimated_completion": self.format_time_estimate(
                max(total - completed, 0), average_step_ms
            ),
        }

    # ------------------------------------------------------------------
    def group_executions_by_role(
        self,
        executions: Iterable[ExecutionLike],
        role_names: Optional[Mapping[str, str]] = None,
    ) -> dict[str, list[dict[str, Any]]]:
        role_names = role_names or {}
        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for execution in executions:
            data = _as_dict(execution)
            role_id = data.get("current_role_id")
            role = role_names.get(role_id, role_id) if role_id else None
            grouped[role or self.config.default_role].append(data)
        return dict(grouped)

    def calculate_overall_progress(self, executions: Iterable[ExecutionLike]) -> dict[str, Any]:
        active = [
            data for data in (_as_dict(e) for e in executions) if data.get("completed_at") is None
        ]
        if not active:
            return {"average_progress": 0, "total_active": 0}
        total = sum(safe_number(d.get("progress_percentage")) for d in active)
        return {
            "average_progress": round_half_up(total / len(active), self.config.rounding_precision),
            "total_active": len(active),
        }

    def role_metrics(
        self,
        executions: Iterable[ExecutionLike],
        role_names: Optional[Mapping[str, str]] = None,
    ) -> dict[str, dict[str, Any]]:
        """Average progress and active count per current role."""
        return {
            role: self.calculate_overall_progress(items)
            for role, items in self.group_executions_by_role(executions, role_names).items()
        }

    # ------------------------------------------------------------------
    def calculate_duration(self, started_at: Any, completed_at: Any = None) -> str:
        start = coerce_datetime(started_at)
        if start is None:
            return self.config.default_duration
        end = coerce_datetime(completed_at) or utcnow()
        if end < start:
            return self.config.default_duration
        return format_duration(end - start)

    def generate_completion_summary(
        self, execution: ExecutionLike, final_role: Optional[str] = None
    ) -> dict[str, Any]:
        data = _as_dict(execution)
        last_error = data.get("last_error")
        return {
            "execution_id": data.get("id"),
            "total_duration": self.calculate_duration(data.get("started_at"), data.get("completed_at")),
            "steps_completed": int(safe_number(data.get("steps_completed"))),
            "final_role": final_role or data.get("current_role_id") or self.config.default_role,
            "quality_metrics": {
                "recovery_attempts": int(safe_number(data.get("recovery_attempts"))),
                "has_errors": bool(last_error),
                "execution_mode": _value(data, "execution_mode") or "GUIDED",
            },
            "recommendations": list(COMPLETION_RECOMMENDATIONS),
        }

    # ------------------------------------------------------------------
    def summarize_batch(self, subtasks: Iterable[SubtaskLike]) -> dict[str, Any]:
        """Completion ratio, efficiency and average time for one batch."""
        items = [_as_dict(s) for s in subtasks]
        completed = [s for s in items if _value(s, "status") == "completed"]
        durations = []
        for item in completed:
            start = coerce_datetime(item.get("started_at"))
            end = coerce_datetime(item.get("completed_at"))
            if start is not None and end is not None and end >= start:
                durations.append((end - start).total_seconds() * 1000)
        average_ms = sum(durations) / len(durations) if durations else 0
        return {
            "total_subtasks": len(items),
            "completed_subtasks": len(completed),
            "is_complete": bool(items) and len(completed) == len(items),
            "efficiency": calculate_percentage(
                len(completed), len(items), self.config.rounding_precision
            ),
            "average_completion_time": (
                format_duration(average_ms) if durations else self.config.default_duration
            ),
        }
