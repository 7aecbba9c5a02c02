"""Side effects of step and flow lifecycle transitions.

The controller only computes. It returns a ``LifecycleEffects`` value that
says which timed events to schedule or cancel and which notifications to
raise; persisting due dates and talking to schedulers is the caller's job.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, List, Literal, Optional

from pydantic import Field, field_validator

from ..contracts import IRModel
from .due_dates import compute_step_due_at, ensure_utc
from .settings import NotificationSettings
from .state import FlowRun, StepExecution, utcnow

logger = logging.getLogger(__name__)

EventKind = Literal["send-reminder", "check-overdue", "escalation"]
EVENT_KINDS: tuple = ("send-reminder", "check-overdue", "escalation")


def event_id(kind: str, step_execution_id: str) -> str:
    """One pending event per kind per step execution."""
    return f"{kind}:{step_execution_id}"


class ScheduledEvent(IRModel):
    kind: EventKind
    step_execution_id: str
    fire_at: datetime

    @field_validator("fire_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def event_id(self) -> str:
        return event_id(self.kind, self.step_execution_id)


class NotificationKind(str, Enum):
    STEP_COMPLETED = "STEP_COMPLETED"
    FLOW_COMPLETED = "FLOW_COMPLETED"
    FLOW_CANCELLED = "FLOW_CANCELLED"


class Notification(IRModel):
    kind: NotificationKind
    flow_run_id: str
    step_execution_id: Optional[str] = None
    step_id: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)


class LifecycleEffects(IRModel):
    """What the caller must do after a transition."""

    due_at: Optional[datetime] = None
    schedule: List[ScheduledEvent] = Field(default_factory=list)
    cancel: List[str] = Field(default_factory=list)
    notifications: List[Notification] = Field(default_factory=list)

    def merge(self, other: "LifecycleEffects") -> "LifecycleEffects":
        """Combine with effects produced after this one.

        A later cancel drops events scheduled earlier for the same step
        execution, since dispatch runs every cancel before any schedule.
        """
        cancelled = set(other.cancel)
        return LifecycleEffects(
            due_at=other.due_at or self.due_at,
            schedule=[e for e in self.schedule if e.step_execution_id not in cancelled]
            + other.schedule,
            cancel=self.cancel + [i for i in other.cancel if i not in self.cancel],
            notifications=self.notifications + other.notifications,
        )

    @property
    def empty(self) -> bool:
        return not (self.due_at or self.schedule or self.cancel or self.notifications)


class StepLifecycleController:
    """Compute timers and notifications for lifecycle transitions.

    Missing settings or due policies suppress the related events rather than
    failing.
    """

    def __init__(self, clock=utcnow) -> None:
        self._clock = clock

    def timed_events(
        self,
        step_execution_id: str,
        due_at: datetime,
        settings: NotificationSettings,
        now: Optional[datetime] = None,
    ) -> List[ScheduledEvent]:
        now = ensure_utc(now or self._clock())
        due_at = ensure_utc(due_at)
        events = []

        if settings.reminder_enabled:
            remind_at = due_at - timedelta(days=settings.reminder_lead_days)
            if remind_at > now:
                events.append(
                    ScheduledEvent(
                        kind="send-reminder",
                        step_execution_id=step_execution_id,
                        fire_at=remind_at,
                    )
                )

        if settings.overdue_enabled:
            events.append(
                ScheduledEvent(
                    kind="check-overdue", step_execution_id=step_execution_id, fire_at=due_at
                )
            )

        if settings.escalation_delay_days is not None:
            events.append(
                ScheduledEvent(
                    kind="escalation",
                    step_execution_id=step_execution_id,
                    fire_at=due_at + timedelta(days=settings.escalation_delay_days),
                )
            )
        return events

    def activate(
        self,
        execution: StepExecution,
        due_policy: Any,
        settings: Optional[NotificationSettings] = None,
        flow_due_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> LifecycleEffects:
        """Effects of ``execution`` becoming IN_PROGRESS.

        A due date that is already set is kept as is.
        """

        now = ensure_utc(now or self._clock())
        due_at = execution.due_at or compute_step_due_at(
            due_policy, execution.started_at or now, flow_due_at
        )
        if due_at is None:
            return LifecycleEffects()

        settings = settings or NotificationSettings()
        events = self.timed_events(execution.execution_id, due_at, settings, now)
        logger.debug(
            f"Step execution {execution.execution_id} due at {due_at.isoformat()}, "
            f"{len(events)} event(s) to schedule"
        )
        return LifecycleEffects(due_at=due_at, schedule=events)

    def reassign_due(
        self,
        execution: StepExecution,
        due_at: datetime,
        settings: Optional[NotificationSettings] = None,
        now: Optional[datetime] = None,
    ) -> LifecycleEffects:
        """Explicitly move a due date: drop old timers and schedule new ones."""
        settings = settings or NotificationSettings()
        due_at = ensure_utc(due_at)
        return LifecycleEffects(
            due_at=due_at,
            cancel=[execution.execution_id],
            schedule=self.timed_events(execution.execution_id, due_at, settings, now),
        )

    def complete(self, execution: StepExecution, recipients: Iterable[str] = ()) -> LifecycleEffects:
        return LifecycleEffects(
            cancel=[execution.execution_id],
            notifications=[
                Notification(
                    kind=NotificationKind.STEP_COMPLETED,
                    flow_run_id=execution.flow_run_id,
                    step_execution_id=execution.execution_id,
                    step_id=execution.step_id,
                    recipients=list(recipients),
                )
            ],
        )

    def flow_completed(self, run: FlowRun) -> LifecycleEffects:
        return LifecycleEffects(
            notifications=[
                Notification(
                    kind=NotificationKind.FLOW_COMPLETED,
                    flow_run_id=run.run_id,
                    recipients=[run.started_by_user_id],
                )
            ]
        )

    def flow_cancelled(
        self, run: FlowRun, executions: Iterable[StepExecution]
    ) -> LifecycleEffects:
        """Cancel every execution's timers and tell active assignees."""
        executions = list(executions)
        recipients: List[str] = []
        for execution in executions:
            if execution.is_active:
                assignee = execution.assignee_id
                if assignee and assignee not in recipients:
                    recipients.append(assignee)
        return LifecycleEffects(
            cancel=[execution.execution_id for execution in executions],
            notifications=[
                Notification(
                    kind=NotificationKind.FLOW_CANCELLED,
                    flow_run_id=run.run_id,
                    recipients=recipients,
                )
            ],
        )
