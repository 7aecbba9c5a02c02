from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_SETTINGS_CACHE_TTL,
    MAX_BRANCH_NESTING_DEPTH,
    MAX_BRANCH_PATHS,
    MAX_DECISION_OUTCOMES,
    MIN_BRANCH_PATHS,
    MIN_DECISION_OUTCOMES,
    TERMINATE_STATUSES,
)


class StructureLimits(BaseModel):
    """Bounds enforced on branch and decision steps."""

    min_branch_paths: int = MIN_BRANCH_PATHS
    max_branch_paths: int = MAX_BRANCH_PATHS
    min_decision_outcomes: int = MIN_DECISION_OUTCOMES
    max_decision_outcomes: int = MAX_DECISION_OUTCOMES
    max_nesting_depth: int = MAX_BRANCH_NESTING_DEPTH
    goto_target_must_be_on_main_path: bool = True
    terminate_statuses: list[str] = Field(
        default_factory=lambda: list(TERMINATE_STATUSES)
    )


class RedisConfig(BaseModel):
    """Configuration for the Redis scheduler backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "stepwise"


class SchedulerConfig(BaseModel):
    """Scheduler backend settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class StepwiseConfig(BaseModel):
    """Top-level configuration model."""

    structure: StructureLimits = StructureLimits()
    scheduler: SchedulerConfig = SchedulerConfig()
    settings_cache_ttl: float = DEFAULT_SETTINGS_CACHE_TTL
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StepwiseConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWISE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWISE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwiseConfig(**data)
    else:
        config = StepwiseConfig()

    env_db_url = os.getenv("STEPWISE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
