"""Persistence layer for stepwise templates, runs and contacts."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryRepository
from .repository import Repository
from .sql import SQLRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> Repository:
    """Factory function to obtain a repository.

    The backend is selected from ``database_url``, given explicitly, via the
    ``STEPWISE_DATABASE_URL`` or ``DATABASE_URL`` environment variables, or
    from loaded configuration. Without a database an in-memory repository is
    returned. Each call builds a new repository; callers own its lifetime.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPWISE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryRepository()
    if database_url.startswith(("sqlite", "postgresql", "mysql")):
        return SQLRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "InMemoryRepository",
    "Repository",
    "SQLRepository",
    "get_repository",
]
