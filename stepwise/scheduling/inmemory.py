"""In-memory scheduler and notifiers for tests and embedding."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from ..lifecycle.controller import EVENT_KINDS, Notification, ScheduledEvent, event_id
from ..lifecycle.due_dates import ensure_utc
from .base import BaseNotifier, BaseScheduler

logger = logging.getLogger(__name__)


class InMemoryScheduler(BaseScheduler):
    """Keep pending events in a dict keyed by event id."""

    def __init__(self) -> None:
        self._events: Dict[str, ScheduledEvent] = {}
        self._lock = asyncio.Lock()

    async def schedule(self, event: ScheduledEvent) -> None:
        async with self._lock:
            self._events[event.event_id] = event

    async def cancel_step(self, step_execution_id: str) -> int:
        removed = 0
        async with self._lock:
            for kind in EVENT_KINDS:
                if self._events.pop(event_id(kind, step_execution_id), None) is not None:
                    removed += 1
        return removed

    async def pending(self, step_execution_id: Optional[str] = None) -> List[ScheduledEvent]:
        async with self._lock:
            events = [
                event
                for event in self._events.values()
                if step_execution_id is None or event.step_execution_id == step_execution_id
            ]
        return sorted(events, key=lambda event: event.fire_at)

    async def pop_due(self, now: datetime) -> List[ScheduledEvent]:
        now = ensure_utc(now)
        async with self._lock:
            due = [event for event in self._events.values() if event.fire_at <= now]
            for event in due:
                del self._events[event.event_id]
        return sorted(due, key=lambda event: event.fire_at)


class InMemoryNotifier(BaseNotifier):
    """Collect notifications in ``sent``."""

    def __init__(self) -> None:
        self.sent: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.sent.append(notification)


class LoggingNotifier(BaseNotifier):
    """Write notifications to the log instead of delivering them."""

    async def notify(self, notification: Notification) -> None:
        target = notification.step_execution_id or notification.flow_run_id
        logger.info(
            f"{notification.kind.value} for {target} -> {', '.join(notification.recipients) or 'nobody'}"
        )
