"""Typed errors raised by the workflow engine.

Every error carries the service and operation that raised it plus a free-form
``context`` mapping so callers can render a structured failure without parsing
messages.
"""

from __future__ import annotations

from typing import Any, Optional


class BatonError(Exception):
    """Base class for engine errors."""

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
        self.operation = operation
        self.context = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "service": self.service,
            "operation": self.operation,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, operation={self.operation!r})"


class NotFoundError(BatonError, LookupError):
    """A referenced task, step, execution or progress record does not exist."""

    code = "NOT_FOUND"


class InvalidInputError(BatonError, ValueError):
    """Malformed or ambiguous input."""

    code = "INVALID_INPUT"


class InvalidTransitionError(InvalidInputError):
    """An execution phase change that the transition table does not allow."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_phase: str, to_phase: str, **kwargs: Any) -> None:
        self.from_phase = from_phase
        self.to_phase = to_phase
        context = {"from_phase": from_phase, "to_phase": to_phase}
        context.update(kwargs.pop("context", None) or {})
        super().__init__(
            f"Invalid phase transition: {from_phase} -> {to_phase}",
            context=context,
            **kwargs,
        )


class PreconditionFailedError(BatonError):
    """A required step condition evaluated false."""

    code = "PRECONDITION_FAILED"

    def __init__(self, message: str, errors: Optional[list[str]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])
        self.context.setdefault("errors", self.errors)


class ExternalToolError(BatonError):
    """An external tool (the git binary) exited non-zero or timed out."""

    code = "EXTERNAL_TOOL_FAILURE"


class RecoverableExecutionError(BatonError):
    """An execution-level failure recorded against the retry budget."""

    code = "RECOVERABLE_EXECUTION_ERROR"


class DataIntegrityError(BatonError):
    """Linked records disagree, e.g. a subtask that belongs to another task."""

    code = "DATA_INTEGRITY_VIOLATION"


class ConcurrentUpdateError(BatonError):
    """A compare-and-swap write lost against a newer version."""

    code = "CONCURRENT_UPDATE"
