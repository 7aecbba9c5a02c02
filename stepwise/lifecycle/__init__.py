from .controller import (
    LifecycleEffects,
    Notification,
    NotificationKind,
    ScheduledEvent,
    StepLifecycleController,
    event_id,
)
from .due_dates import (
    compute_flow_due_at,
    compute_step_due_at,
    parse_due_policy,
    parse_flow_due_policy,
)
from .settings import NotificationSettings, SettingsCache
from .state import FlowRun, FlowStatus, StepExecution, StepStatus, seed_step_executions

__all__ = [
    "FlowRun",
    "FlowStatus",
    "LifecycleEffects",
    "Notification",
    "NotificationKind",
    "NotificationSettings",
    "ScheduledEvent",
    "SettingsCache",
    "StepExecution",
    "StepLifecycleController",
    "StepStatus",
    "compute_flow_due_at",
    "compute_step_due_at",
    "event_id",
    "parse_due_policy",
    "parse_flow_due_policy",
    "seed_step_executions",
]
