"""Carry out the effects reported by the lifecycle controller."""

from __future__ import annotations

import logging

from ..lifecycle.controller import LifecycleEffects
from .base import BaseNotifier, BaseScheduler

logger = logging.getLogger(__name__)


class EffectDispatcher:
    """Apply ``LifecycleEffects`` to a scheduler and a notifier.

    Cancellations run before new events are scheduled so a reassigned due
    date never loses its fresh timers.
    """

    def __init__(self, scheduler: BaseScheduler, notifier: BaseNotifier) -> None:
        self.scheduler = scheduler
        self.notifier = notifier

    async def dispatch(self, effects: LifecycleEffects) -> None:
        for step_execution_id in effects.cancel:
            removed = await self.scheduler.cancel_step(step_execution_id)
            if removed:
                logger.debug(f"Cancelled {removed} event(s) for {step_execution_id}")
        for event in effects.schedule:
            await self.scheduler.schedule(event)
            logger.debug(f"Scheduled {event.event_id} at {event.fire_at.isoformat()}")
        for notification in effects.notifications:
            await self.notifier.notify(notification)
