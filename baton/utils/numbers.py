from __future__ import annotations

import math
from typing import Any, Optional

from ..errors import InvalidInputError


def round_half_up(value: float, precision: int = 0) -> float | int:
    """Round halves away from zero instead of to even."""
    factor = 10**precision
    rounded = math.floor(abs(value) * factor + 0.5) / factor
    rounded = math.copysign(rounded, value)
    return int(rounded) if precision == 0 else rounded


def clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def safe_number(value: Any, default: float | int = 0) -> float | int:
    """Return ``value`` if it is a real finite number, else ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return value


def calculate_percentage(completed: Any, total: Any, precision: int = 0) -> float | int:
    """Percentage of ``completed`` over ``total`` bounded to [0, 100]."""
    completed = safe_number(completed)
    total = safe_number(total)
    if total <= 0:
        return 0
    if completed >= total:
        return 100
    return round_half_up(clamp(completed / total * 100), precision)


def as_count(value: Any, name: str, operation: Optional[str] = None) -> int:
    """Coerce a caller-supplied counter to an int; negatives become 0."""
    try:
        if isinstance(value, bool):
            raise TypeError(name)
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(
            f"{name} must be an integer, got {value!r}",
            service="engine",
            operation=operation,
            context={"field": name},
        ) from exc
    return max(count, 0)
