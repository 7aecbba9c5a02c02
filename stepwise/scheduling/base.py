"""Base interfaces for timed events and notifications."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Optional

from ..lifecycle.controller import Notification, ScheduledEvent


class BaseScheduler(metaclass=abc.ABCMeta):
    """Abstract store of pending timed events.

    Events are keyed by ``event_id`` (``<kind>:<stepExecutionId>``), so
    scheduling the same kind again for a step replaces the earlier event.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def schedule(self, event: ScheduledEvent) -> None:
        """Register ``event`` to fire at ``event.fire_at``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel_step(self, step_execution_id: str) -> int:
        """Drop every pending event of a step execution; return how many."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pending(self, step_execution_id: Optional[str] = None) -> list[ScheduledEvent]:
        """Pending events ordered by fire time, optionally for one step."""
        raise NotImplementedError

    @abc.abstractmethod
    async def pop_due(self, now: datetime) -> list[ScheduledEvent]:
        """Remove and return events whose fire time is at or before ``now``."""
        raise NotImplementedError


class BaseNotifier(metaclass=abc.ABCMeta):
    """Abstract delivery of lifecycle notifications."""

    @abc.abstractmethod
    async def notify(self, notification: Notification) -> None:
        raise NotImplementedError
