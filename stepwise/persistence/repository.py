"""Repository abstraction for templates, flow runs and contacts."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import Contact, Workflow
from ..lifecycle.state import FlowRun, StepExecution


class Repository(Protocol):
    """Protocol for persistence backends.

    Also satisfies ``ContactDirectory`` so it can back assignee resolution.
    """

    async def save_template(self, workflow: Workflow) -> None:
        """Insert or replace a template."""

    async def get_template(self, workflow_id: str) -> Optional[Workflow]:
        """Retrieve a template by id."""

    async def list_templates(self) -> list[Workflow]:
        """Return all stored templates."""

    async def save_flow_run(self, run: FlowRun) -> None:
        """Insert or replace a flow run."""

    async def get_flow_run(self, run_id: str) -> Optional[FlowRun]:
        """Retrieve a flow run by id."""

    async def list_flow_runs(self, template_id: Optional[str] = None) -> list[FlowRun]:
        """Return flow runs, optionally only those of one template."""

    async def save_step_executions(self, executions: Iterable[StepExecution]) -> None:
        """Insert or replace step executions."""

    async def get_step_executions(self, run_id: str) -> list[StepExecution]:
        """Return a run's step executions in creation order."""

    async def find_contact(self, organization_id: str, email: str) -> Optional[Contact]:
        """Find a contact by organization and lower-cased email."""

    async def create_contact(self, organization_id: str, email: str, name: str) -> Contact:
        """Create and return a new contact."""

    async def count_assignments(self, template_id: str, contact_id: str) -> int:
        """Count step executions assigned to a contact across a template's runs."""
