"""SQL tables for the SQLModel-backed repository.

Each row keeps the full pydantic record as JSON next to the columns that
are queried.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TemplateRow(SQLModel, table=True):
    """A stored workflow template."""

    __tablename__ = "templates"

    id: str = Field(primary_key=True)
    name: str
    definition: dict = Field(sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=_now)


class FlowRunRow(SQLModel, table=True):
    """A running or finished instance of a template."""

    __tablename__ = "flow_runs"

    id: str = Field(primary_key=True)
    template_id: str = Field(index=True)
    organization_id: str = Field(index=True)
    status: str
    data: dict = Field(sa_column=Column(JSON))


class StepExecutionRow(SQLModel, table=True):
    """A step instance inside a flow run."""

    __tablename__ = "step_executions"

    id: str = Field(primary_key=True)
    flow_run_id: str = Field(foreign_key="flow_runs.id", index=True)
    step_id: str
    status: str
    assigned_contact_id: Optional[str] = Field(default=None, index=True)
    seq: int = 0
    data: dict = Field(sa_column=Column(JSON))


class ContactRow(SQLModel, table=True):
    """An assignable person outside the organization's user base."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("organization_id", "email"),)

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    email: str
    name: str
    created_at: datetime = Field(default_factory=_now)
