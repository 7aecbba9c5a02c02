"""SQLModel implementation of the repository (SQLAlchemy asyncio)."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..contracts import Contact, Workflow
from ..lifecycle.state import FlowRun, StepExecution
from .models import ContactRow, FlowRunRow, StepExecutionRow, TemplateRow
from .repository import Repository

logger = logging.getLogger(__name__)


def async_database_url(database_url: str) -> str:
    """Pick the async driver for plain SQLite and PostgreSQL URLs."""
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class SQLRepository(Repository):
    """Persist templates, runs and contacts with SQLModel tables.

    The schema is created on first use; ``init_db`` does it eagerly.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = async_database_url(database_url)
        connect_args = (
            {"check_same_thread": False}
            if self.database_url.startswith("sqlite")
            else {}
        )
        self.engine = create_async_engine(
            self.database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True
            logger.debug(f"Database schema ready at {self.database_url}")

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    # Templates
    async def save_template(self, workflow: Workflow) -> None:
        row = TemplateRow(
            id=workflow.workflow_id,
            name=workflow.name,
            definition=workflow.model_dump(mode="json", by_alias=True),
            updated_at=datetime.now(timezone.utc),
        )
        async with self.session() as session:
            await session.merge(row)
            await session.commit()

    async def get_template(self, workflow_id: str) -> Optional[Workflow]:
        async with self.session() as session:
            row = await session.get(TemplateRow, workflow_id)
            return Workflow.model_validate(row.definition) if row else None

    async def list_templates(self) -> list[Workflow]:
        async with self.session() as session:
            result = await session.execute(select(TemplateRow).order_by(TemplateRow.id))
            return [Workflow.model_validate(row.definition) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Flow runs
    async def save_flow_run(self, run: FlowRun) -> None:
        row = FlowRunRow(
            id=run.run_id,
            template_id=run.template_id,
            organization_id=run.organization_id,
            status=run.status.value,
            data=run.model_dump(mode="json", by_alias=True),
        )
        async with self.session() as session:
            await session.merge(row)
            await session.commit()

    async def get_flow_run(self, run_id: str) -> Optional[FlowRun]:
        async with self.session() as session:
            row = await session.get(FlowRunRow, run_id)
            return FlowRun.model_validate(row.data) if row else None

    async def list_flow_runs(self, template_id: Optional[str] = None) -> list[FlowRun]:
        statement = select(FlowRunRow)
        if template_id is not None:
            statement = statement.where(FlowRunRow.template_id == template_id)
        async with self.session() as session:
            result = await session.execute(statement)
            return [FlowRun.model_validate(row.data) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Step executions
    async def save_step_executions(self, executions: Iterable[StepExecution]) -> None:
        async with self.session() as session:
            for execution in executions:
                row = await session.get(StepExecutionRow, execution.execution_id)
                data = execution.model_dump(mode="json", by_alias=True)
                if row is None:
                    result = await session.execute(
                        select(func.count(StepExecutionRow.id)).where(
                            StepExecutionRow.flow_run_id == execution.flow_run_id
                        )
                    )
                    row = StepExecutionRow(
                        id=execution.execution_id,
                        flow_run_id=execution.flow_run_id,
                        step_id=execution.step_id,
                        seq=result.scalar_one(),
                        status=execution.status.value,
                        assigned_contact_id=execution.assigned_contact_id,
                        data=data,
                    )
                    session.add(row)
                else:
                    row.status = execution.status.value
                    row.assigned_contact_id = execution.assigned_contact_id
                    row.data = data
                # Keep seq counts accurate within one batch.
                await session.flush()
            await session.commit()

    async def get_step_executions(self, run_id: str) -> list[StepExecution]:
        async with self.session() as session:
            result = await session.execute(
                select(StepExecutionRow)
                .where(StepExecutionRow.flow_run_id == run_id)
                .order_by(StepExecutionRow.seq)
            )
            return [StepExecution.model_validate(row.data) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Contacts
    async def find_contact(self, organization_id: str, email: str) -> Optional[Contact]:
        async with self.session() as session:
            result = await session.execute(
                select(ContactRow).where(
                    ContactRow.organization_id == organization_id,
                    ContactRow.email == email.lower(),
                )
            )
            row = result.scalars().first()
            return self._contact(row) if row else None

    async def create_contact(self, organization_id: str, email: str, name: str) -> Contact:
        row = ContactRow(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            email=email.lower(),
            name=name,
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
        return self._contact(row)

    async def count_assignments(self, template_id: str, contact_id: str) -> int:
        statement = (
            select(func.count(StepExecutionRow.id))
            .join(FlowRunRow, StepExecutionRow.flow_run_id == FlowRunRow.id)
            .where(
                FlowRunRow.template_id == template_id,
                StepExecutionRow.assigned_contact_id == contact_id,
            )
        )
        async with self.session() as session:
            result = await session.execute(statement)
            return int(result.scalar_one())

    @staticmethod
    def _contact(row: ContactRow) -> Contact:
        return Contact(
            contact_id=row.id,
            organization_id=row.organization_id,
            email=row.email,
            name=row.name,
        )
