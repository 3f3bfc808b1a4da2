from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Best-effort conversion of stored timestamps; ``None`` when unusable."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value:
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def format_duration(delta: timedelta | float | int) -> str:
    """Render a duration as ``"Xh Ym"``. Numbers are milliseconds."""
    if isinstance(delta, timedelta):
        total_seconds = delta.total_seconds()
    else:
        total_seconds = float(delta) / 1000
    total_minutes = max(int(total_seconds // 60), 0)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"
