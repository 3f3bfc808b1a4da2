"""Persistence layer for workflow definitions and execution state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import BatonConfig, load_config
from .inmemory import InMemoryWorkflowStore
from .repository import WorkflowStore
from .sql import SQLWorkflowStore

_store_instance: WorkflowStore | None = None

_SQL_PREFIXES = ("sqlite", "postgres://", "postgresql")


def get_store(
    database_url: Optional[str] = None, config: Optional[BatonConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``BATON_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("BATON_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryWorkflowStore()
    elif database_url.startswith(_SQL_PREFIXES):
        _store_instance = SQLWorkflowStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SQLWorkflowStore",
    "get_store",
]
