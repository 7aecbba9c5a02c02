"""Scheduler factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwiseConfig, load_config
from .base import BaseNotifier, BaseScheduler
from .dispatcher import EffectDispatcher
from .inmemory import InMemoryNotifier, InMemoryScheduler, LoggingNotifier


def get_scheduler(
    backend: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> BaseScheduler:
    """Factory function to get the configured scheduler."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STEPWISE_SCHEDULER")
        or config.scheduler.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryScheduler()
    elif backend == "redis":
        from .redis import RedisScheduler

        redis_conf = config.scheduler.redis
        return RedisScheduler(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
        )
    else:
        raise ValueError(f"Unsupported scheduler backend: {backend}")


__all__ = [
    "BaseNotifier",
    "BaseScheduler",
    "EffectDispatcher",
    "InMemoryNotifier",
    "InMemoryScheduler",
    "LoggingNotifier",
    "get_scheduler",
]
