from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict

ExecutionModeName = Literal["GUIDED", "AUTOMATED", "HYBRID"]


class ExecutionConfig(BaseModel):
    """Tunables for the execution state machine."""

    model_config = ConfigDict(frozen=True)

    default_execution_mode: ExecutionModeName = "GUIDED"
    max_recovery_attempts: int = 3
    completion_percentage: int = 100
    max_context_bytes: int = 10000


class ConditionConfig(BaseModel):
    """Tunables for step condition evaluation."""

    model_config = ConfigDict(frozen=True)

    git_command_timeout: float = 10.0
    file_encoding: str = "utf-8"
    allowed_expression_pattern: str = r"^[\w\s\"'.\-+*/()=!<>&|]+$"
    max_query_result_count: int = 1000
    max_query_parameters: int = 10


class AnalyticsConfig(BaseModel):
    """Defaults used when deriving progress metrics from partial data."""

    model_config = ConfigDict(frozen=True)

    rounding_precision: int = 0
    default_role: str = "unknown"
    default_duration: str = "0h 0m"
    near_completion_threshold: int = 1


class BatonConfig(BaseModel):
    """Top-level configuration model."""

    model_config = ConfigDict(frozen=True)

    execution: ExecutionConfig = ExecutionConfig()
    conditions: ConditionConfig = ConditionConfig()
    analytics: AnalyticsConfig = AnalyticsConfig()
    database_url: Optional[str] = None
    project_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> BatonConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to BATON_CONFIG env
            variable or 'baton.yaml' in the current directory.
    """

    config_path = path or os.getenv("BATON_CONFIG", "baton.yaml")
    data: dict = {}
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

    env_db_url = os.getenv("BATON_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        data["database_url"] = env_db_url
    return BatonConfig(**data)
