"""Runtime state of flow runs and their step executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field

from ..contracts import IRModel, Workflow
from ..exceptions import InvalidStatusTransition
from ..resolution.assignees import ResolvedAssignee
from ..resolution.tokens import WorkspaceInfo


class StepStatus(str, Enum):
    PENDING = "PENDING"
    WAITING_FOR_ASSIGNEE = "WAITING_FOR_ASSIGNEE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset({StepStatus.WAITING_FOR_ASSIGNEE, StepStatus.IN_PROGRESS})

# COMPLETED and SKIPPED may be reopened when a goto loops back over them.
ALLOWED_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset(
        {
            StepStatus.WAITING_FOR_ASSIGNEE,
            StepStatus.IN_PROGRESS,
            StepStatus.SKIPPED,
            StepStatus.CANCELLED,
        }
    ),
    StepStatus.WAITING_FOR_ASSIGNEE: frozenset(
        {StepStatus.IN_PROGRESS, StepStatus.CANCELLED}
    ),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.CANCELLED}),
    StepStatus.COMPLETED: frozenset({StepStatus.PENDING}),
    StepStatus.SKIPPED: frozenset({StepStatus.PENDING}),
    StepStatus.CANCELLED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: StepStatus, requested: StepStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


class StepExecution(IRModel):
    """One instance of a template step inside a flow run."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_run_id: str
    step_id: str
    step_type: str
    step_name: Optional[str] = None
    parent_step_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    parent_iteration: int = 0
    container_id: Optional[str] = None
    position: int = 0
    iteration: int = 0
    status: StepStatus = StepStatus.PENDING
    assigned_contact_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    started_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def assignee_id(self) -> Optional[str]:
        return self.assigned_contact_id or self.assigned_user_id

    def transition(self, status: StepStatus, at: Optional[datetime] = None) -> None:
        """Move to ``status``, stamping start/completion times.

        Raises:
            InvalidStatusTransition: If the change is not allowed from the
                current status.
        """
        status = StepStatus(status)
        if not can_transition(self.status, status):
            raise InvalidStatusTransition(
                self.execution_id, self.status.value, status.value
            )
        at = at or utcnow()
        if status is StepStatus.IN_PROGRESS:
            self.started_at = at
        elif status in (StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.CANCELLED):
            self.completed_at = at
        elif status is StepStatus.PENDING:
            # Reopened: the next activation is a fresh piece of work, and
            # executions seeded under the previous iteration no longer count.
            self.started_at = None
            self.completed_at = None
            self.due_at = None
            self.iteration += 1
        self.status = status


class FlowStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class FlowRun(IRModel):
    """A running instance of a template, with its own workflow snapshot."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    organization_id: str
    started_by_user_id: str
    name: str
    workflow: Workflow
    status: FlowStatus = FlowStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    due_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    kickoff_data: Dict[str, Any] = Field(default_factory=dict)
    flow_variables: Dict[str, Any] = Field(default_factory=dict)
    role_assignments: Dict[str, ResolvedAssignee] = Field(default_factory=dict)
    workspace: Optional[WorkspaceInfo] = None


def seed_step_executions(
    run: FlowRun,
    steps: Iterable[Any],
    parent: Optional[StepExecution] = None,
    container_id: Optional[str] = None,
) -> List[StepExecution]:
    """Create PENDING executions for one container level of ``steps``.

    Nested paths and outcomes are seeded later, once routing picks them,
    under the ``parent`` execution's current iteration.
    """

    executions = []
    for position, step in enumerate(steps):
        assignee = run.role_assignments.get(step.assignee_role or "")
        executions.append(
            StepExecution(
                flow_run_id=run.run_id,
                step_id=step.step_id,
                step_type=str(step.type),
                step_name=step.title,
                parent_step_id=parent.step_id if parent else None,
                parent_execution_id=parent.execution_id if parent else None,
                parent_iteration=parent.iteration if parent else 0,
                container_id=container_id,
                position=position,
                assigned_contact_id=assignee.contact_id if assignee else None,
                assigned_user_id=assignee.user_id if assignee else None,
            )
        )
    return executions
