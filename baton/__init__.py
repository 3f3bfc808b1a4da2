"""Baton: role-by-role workflow execution engine."""

from .config import BatonConfig, load_config
from .definitions import load_definitions, seed_definitions
from .engine import WorkflowEngine
from .errors import (
    BatonError,
    ConcurrentUpdateError,
    DataIntegrityError,
    ExternalToolError,
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
    RecoverableExecutionError,
)
from .persistence import get_store

__version__ = "0.1.0"
__all__ = [
    "BatonConfig",
    "BatonError",
    "ConcurrentUpdateError",
    "DataIntegrityError",
    "ExternalToolError",
    "InvalidInputError",
    "NotFoundError",
    "PreconditionFailedError",
    "RecoverableExecutionError",
    "WorkflowEngine",
    "get_store",
    "load_config",
    "load_definitions",
    "seed_definitions",
]
