"""In-memory implementation of the repository."""

from __future__ import annotations

import uuid
from typing import Dict, Iterable, Optional, Tuple

from ..contracts import Contact, Workflow
from ..lifecycle.state import FlowRun, StepExecution
from .repository import Repository


class InMemoryRepository(Repository):
    """Store everything in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored objects are copies, so callers
    must save again after mutating what they loaded.
    """

    def __init__(self) -> None:
        self._templates: Dict[str, Workflow] = {}
        self._runs: Dict[str, FlowRun] = {}
        self._executions: Dict[str, StepExecution] = {}
        self._contacts: Dict[Tuple[str, str], Contact] = {}

    # ------------------------------------------------------------------
    async def save_template(self, workflow: Workflow) -> None:
        self._templates[workflow.workflow_id] = workflow.model_copy(deep=True)

    async def get_template(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self._templates.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_templates(self) -> list[Workflow]:
        return [workflow.model_copy(deep=True) for workflow in self._templates.values()]

    # ------------------------------------------------------------------
    async def save_flow_run(self, run: FlowRun) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_flow_run(self, run_id: str) -> Optional[FlowRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_flow_runs(self, template_id: Optional[str] = None) -> list[FlowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if template_id is None or run.template_id == template_id
        ]

    async def save_step_executions(self, executions: Iterable[StepExecution]) -> None:
        for execution in executions:
            self._executions[execution.execution_id] = execution.model_copy(deep=True)

    async def get_step_executions(self, run_id: str) -> list[StepExecution]:
        return [
            execution.model_copy(deep=True)
            for execution in self._executions.values()
            if execution.flow_run_id == run_id
        ]

    # ------------------------------------------------------------------
    async def find_contact(self, organization_id: str, email: str) -> Optional[Contact]:
        return self._contacts.get((organization_id, email.lower()))

    async def create_contact(self, organization_id: str, email: str, name: str) -> Contact:
        contact = Contact(
            contact_id=str(uuid.uuid4()),
            organization_id=organization_id,
            email=email.lower(),
            name=name,
        )
        self._contacts[(organization_id, contact.email)] = contact
        return contact

    async def count_assignments(self, template_id: str, contact_id: str) -> int:
        return sum(
            1
            for execution in self._executions.values()
            if execution.assigned_contact_id == contact_id
            and execution.flow_run_id in self._runs
            and self._runs[execution.flow_run_id].template_id == template_id
        )
