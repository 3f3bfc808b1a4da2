"""CUSTOM_LOGIC sub-language.

Only a handful of shapes are understood. Anything else is rejected and
evaluates to ``False``: expressions never execute code, queries must be
lexically read-only, and file/env checks only read.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

from ..config import ConditionConfig
from ..errors import InvalidInputError
from ..models import DatabaseQueryLogic, EnvironmentLogic, ExpressionLogic, FileContentLogic
from ..persistence.repository import WorkflowStore
from .result import ConditionResult

logger = logging.getLogger(__name__)

_VALUE = r"""(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[\w.\-]+))"""
_EQUALS = re.compile(rf"^(?P<name>\w+)\s*==\s*{_VALUE}$")
_NOT_EQUALS = re.compile(rf"^(?P<name>\w+)\s*!=\s*{_VALUE}$")
_EXISTS = re.compile(r"^(?P<name>\w+)\s+exists$")

_DENIED_QUERY_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bdrop\s+table\b",
        r"\bdelete\s+from\b",
        r"\bupdate\s+\w+\s+set\b",
        r"\binsert\s+into\b",
        r"\bcreate\s+table\b",
        r"\balter\s+table\b",
        r"\bexec\s*\(",
        r"\bexecute\s*\(",
        r"\battach\s+database\b",
        r"\bpragma\b",
        r";\s*\S",
    )
)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def evaluate_expression(
    expression: str, parameters: Mapping[str, Any], allowed_pattern: str
) -> bool:
    """Evaluate ``name == value``, ``name != value`` or ``name exists``.

    Unsupported or disallowed input evaluates to ``False``.
    """
    expression = (expression or "").strip()
    if not expression or not re.match(allowed_pattern, expression):
        return False

    match = _EQUALS.match(expression)
    if match:
        name = match.group("name")
        return name in parameters and _stringify(parameters[name]) == _expected(match)

    match = _NOT_EQUALS.match(expression)
    if match:
        name = match.group("name")
        return name not in parameters or _stringify(parameters[name]) != _expected(match)

    match = _EXISTS.match(expression)
    if match:
        name = match.group("name")
        return parameters.get(name) is not None

    logger.debug(f"Unsupported custom expression rejected: {expression!r}")
    return False


def _expected(match: re.Match) -> str:
    for group in ("dq", "sq", "bare"):
        if match.group(group) is not None:
            return match.group(group)
    return ""


def check_query_safety(query: str, parameters: Mapping[str, Any], config: ConditionConfig) -> None:
    """Raise ``InvalidInputError`` unless ``query`` is a plain SELECT."""
    normalized = (query or "").strip()
    if not normalized.lower().startswith("select"):
        raise InvalidInputError(
            "Only SELECT queries are allowed",
            service="conditions",
            operation="database_query",
        )
    for pattern in _DENIED_QUERY_PATTERNS:
        if pattern.search(normalized):
            raise InvalidInputError(
                "Query contains potentially dangerous operations",
                service="conditions",
                operation="database_query",
                context={"pattern": pattern.pattern},
            )
    if len(parameters) > config.max_query_parameters:
        raise InvalidInputError(
            f"Too many query parameters (max {config.max_query_parameters})",
            service="conditions",
            operation="database_query",
        )


class CustomLogicEvaluator:
    """Evaluates the four CUSTOM_LOGIC kinds."""

    def __init__(
        self,
        store: WorkflowStore,
        config: ConditionConfig,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.environ = environ if environ is not None else os.environ

    async def evaluate(self, logic: Any, project_path: Optional[str]) -> ConditionResult:
        if isinstance(logic, ExpressionLogic):
            return self._expression(logic)
        if isinstance(logic, DatabaseQueryLogic):
            return await self._database_query(logic)
        if isinstance(logic, FileContentLogic):
            return await self._file_content(logic, project_path)
        if isinstance(logic, EnvironmentLogic):
            return self._environment(logic)
        return ConditionResult(valid=False, reason="Unsupported custom logic")

    def _expression(self, logic: ExpressionLogic) -> ConditionResult:
        valid = evaluate_expression(
            logic.expression, logic.parameters, self.config.allowed_expression_pattern
        )
        return ConditionResult(
            valid=valid,
            reason=None if valid else "Custom logic evaluation failed",
            details={"expression": logic.expression},
        )

    async def _database_query(self, logic: DatabaseQueryLogic) -> ConditionResult:
        try:
            check_query_safety(logic.expression, logic.parameters, self.config)
        except InvalidInputError as exc:
            logger.warning(f"Rejected condition query: {exc.message}")
            return ConditionResult(valid=False, reason=f"Database query error: {exc.message}")

        limit = self.config.max_query_result_count
        try:
            rows = await self.store.raw_query(logic.expression, logic.parameters, limit=limit)
        except Exception as exc:
            return ConditionResult(valid=False, reason=f"Database query error: {exc}")

        rows = rows[:limit]
        return ConditionResult(
            valid=len(rows) > 0,
            reason=None if rows else "Query returned no rows",
            details={"row_count": len(rows), "truncated": len(rows) >= limit},
        )

    async def _file_content(self, logic: FileContentLogic, project_path: Optional[str]) -> ConditionResult:
        path = resolve_path(logic.file_path, project_path)
        encoding = logic.encoding or self.config.file_encoding
        try:
            content = await asyncio.to_thread(path.read_text, encoding=encoding)
        except (OSError, UnicodeDecodeError) as exc:
            return ConditionResult(
                valid=False,
                reason=f"File content check error: {exc}",
                details={"file_path": str(path)},
            )

        if logic.pattern:
            try:
                matches = re.findall(logic.pattern, content)
            except re.error as exc:
                return ConditionResult(valid=False, reason=f"Invalid pattern: {exc}")
            return ConditionResult(
                valid=bool(matches),
                reason=None if matches else "Pattern not found in file",
                details={"file_path": str(path), "pattern": logic.pattern, "match_count": len(matches)},
            )

        if not logic.expression:
            return ConditionResult(valid=False, reason="No pattern or expression given")
        found = logic.expression in content
        return ConditionResult(
            valid=found,
            reason=None if found else "Expression not found in file",
            details={"file_path": str(path), "expression": logic.expression},
        )

    def _environment(self, logic: EnvironmentLogic) -> ConditionResult:
        value = self.environ.get(logic.env_var)
        details = {"env_var": logic.env_var, "check_type": logic.check_type, "exists": value is not None}
        if logic.check_type == "exists":
            valid = value is not None
        elif logic.check_type == "equals":
            valid = value is not None and value == logic.expected_value
        elif logic.check_type == "contains":
            valid = value is not None and logic.expected_value is not None and logic.expected_value in value
        else:
            return ConditionResult(
                valid=False,
                reason=f"Unknown environment check type: {logic.check_type}",
                details=details,
            )
        return ConditionResult(
            valid=valid,
            reason=None if valid else f"Environment check '{logic.check_type}' failed for {logic.env_var}",
            details=details,
        )


def resolve_path(path: str, project_path: Optional[str]) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return Path(project_path or os.getcwd()) / candidate
