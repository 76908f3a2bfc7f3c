"""SQL implementation of the workflow repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import (
    ApprovalDB,
    AuditEntryRow,
    StepExecutionRow,
    WorkflowInstanceRow,
    WorkflowStepRow,
    WorkflowTemplateRow,
)
from ..models import (
    AuditAction,
    AuditEntry,
    ExecutionStatus,
    InstanceStatus,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
    new_id,
    utcnow,
)
from .repository import WorkflowRepository, WorkflowSession


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _step(row: WorkflowStepRow) -> WorkflowStep:
    return WorkflowStep(
        id=row.id,
        template_id=row.template_id,
        step_number=row.step_number,
        step_name=row.step_name,
        required_role=row.required_role,
        assigned_user=row.assigned_user,
        description=row.description,
        is_mandatory=row.is_mandatory,
        can_delegate=row.can_delegate,
        timeout_days=row.timeout_days,
        escalation_role=row.escalation_role,
    )


def _instance(row: WorkflowInstanceRow) -> WorkflowInstance:
    return WorkflowInstance(
        id=row.id,
        template_id=row.template_id,
        entity_id=row.entity_id,
        entity_type=row.entity_type,
        current_step_id=row.current_step_id,
        current_step_number=row.current_step_number,
        status=InstanceStatus(row.status),
        initiated_by=row.initiated_by,
        started_at=_utc(row.started_at),
        completed_at=_utc(row.completed_at),
        metadata=dict(row.instance_metadata or {}),
        status_synced=row.status_synced,
    )


def _execution(row: StepExecutionRow) -> StepExecution:
    return StepExecution(
        id=row.id,
        instance_id=row.instance_id,
        step_id=row.step_id,
        step_number=row.step_number,
        step_name=row.step_name,
        assigned_role=row.assigned_role,
        assigned_user=row.assigned_user,
        status=ExecutionStatus(row.status),
        action_by=row.action_by,
        action_at=_utc(row.action_at),
        comments=row.comments,
        due_date=_utc(row.due_date),
        created_at=_utc(row.created_at),
        escalated_from=row.escalated_from,
        delegated_from=row.delegated_from,
    )


def _audit(row: AuditEntryRow) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        instance_id=row.instance_id,
        execution_id=row.execution_id,
        action=AuditAction(row.action),
        performed_by=row.performed_by,
        details=dict(row.details or {}),
        created_at=_utc(row.created_at),
    )


class SQLWorkflowSession(WorkflowSession):
    """Session bound to one open database transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _all(self, stmt) -> list:
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Templates
    async def insert_template(self, template: WorkflowTemplate) -> None:
        now = utcnow()
        self._session.add(
            WorkflowTemplateRow(
                id=template.id,
                name=template.name,
                description=template.description,
                module=template.module,
                is_active=template.is_active,
                created_by=template.created_by,
                created_at=template.created_at or now,
                updated_at=template.updated_at or now,
            )
        )
        await self._session.flush()

    async def update_template(self, template: WorkflowTemplate) -> bool:
        row = await self._session.get(WorkflowTemplateRow, template.id)
        if row is None:
            return False
        row.name = template.name
        row.description = template.description
        row.module = template.module
        row.is_active = template.is_active
        row.updated_at = template.updated_at or utcnow()
        await self._session.flush()
        return True

    async def replace_steps(self, template_id: str, steps: list[WorkflowStep]) -> None:
        await self._session.execute(
            delete(WorkflowStepRow).where(WorkflowStepRow.template_id == template_id)
        )
        for step in steps:
            self._session.add(
                WorkflowStepRow(
                    id=step.id or new_id(),
                    template_id=template_id,
                    step_number=step.step_number,
                    step_name=step.step_name,
                    required_role=step.required_role,
                    assigned_user=step.assigned_user,
                    description=step.description,
                    is_mandatory=step.is_mandatory,
                    can_delegate=step.can_delegate,
                    timeout_days=step.timeout_days,
                    escalation_role=step.escalation_role,
                )
            )
        await self._session.flush()

    async def _with_steps(self, row: WorkflowTemplateRow) -> WorkflowTemplate:
        steps = await self._all(
            select(WorkflowStepRow)
            .where(WorkflowStepRow.template_id == row.id)
            .order_by(WorkflowStepRow.step_number)
        )
        return WorkflowTemplate(
            id=row.id,
            name=row.name,
            description=row.description,
            module=row.module,
            is_active=row.is_active,
            created_by=row.created_by,
            created_at=_utc(row.created_at),
            updated_at=_utc(row.updated_at),
            steps=[_step(s) for s in steps],
        )

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await self._session.get(WorkflowTemplateRow, template_id)
        return await self._with_steps(row) if row else None

    async def list_templates(
        self, module: Optional[str] = None, include_inactive: bool = False
    ) -> list[WorkflowTemplate]:
        stmt = select(WorkflowTemplateRow).order_by(WorkflowTemplateRow.name)
        if module is not None:
            stmt = stmt.where(WorkflowTemplateRow.module == module)
        if not include_inactive:
            stmt = stmt.where(WorkflowTemplateRow.is_active.is_(True))
        return [await self._with_steps(row) for row in await self._all(stmt)]

    async def find_template_by_name(
        self, name: str, module: str
    ) -> WorkflowTemplate | None:
        rows = await self._all(
            select(WorkflowTemplateRow).where(
                WorkflowTemplateRow.name == name,
                WorkflowTemplateRow.module == module,
                WorkflowTemplateRow.is_active.is_(True),
            )
        )
        return await self._with_steps(rows[0]) if rows else None

    async def count_instances(self, template_id: str, status: InstanceStatus) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(WorkflowInstanceRow)
            .where(
                WorkflowInstanceRow.template_id == template_id,
                WorkflowInstanceRow.status == status.value,
            )
        )
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Instances
    async def insert_instance(self, instance: WorkflowInstance) -> None:
        self._session.add(
            WorkflowInstanceRow(
                id=instance.id,
                template_id=instance.template_id,
                entity_id=instance.entity_id,
                entity_type=instance.entity_type,
                current_step_id=instance.current_step_id,
                current_step_number=instance.current_step_number,
                status=instance.status.value,
                initiated_by=instance.initiated_by,
                started_at=instance.started_at,
                completed_at=instance.completed_at,
                instance_metadata=dict(instance.metadata),
                status_synced=instance.status_synced,
            )
        )
        await self._session.flush()

    async def update_instance(self, instance: WorkflowInstance) -> None:
        row = await self._session.get(WorkflowInstanceRow, instance.id)
        if row is None:
            raise LookupError(f"Instance {instance.id} does not exist")
        row.current_step_id = instance.current_step_id
        row.current_step_number = instance.current_step_number
        row.status = instance.status.value
        row.completed_at = instance.completed_at
        row.instance_metadata = dict(instance.metadata)
        row.status_synced = instance.status_synced
        await self._session.flush()

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._session.get(WorkflowInstanceRow, instance_id)
        return _instance(row) if row else None

    async def find_pending_instance(
        self, template_id: str, entity_type: str, entity_id: str
    ) -> WorkflowInstance | None:
        rows = await self._all(
            select(WorkflowInstanceRow).where(
                WorkflowInstanceRow.template_id == template_id,
                WorkflowInstanceRow.entity_type == entity_type,
                WorkflowInstanceRow.entity_id == entity_id,
                WorkflowInstanceRow.status == InstanceStatus.PENDING.value,
            )
        )
        return _instance(rows[0]) if rows else None

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        stmt = select(WorkflowInstanceRow).order_by(WorkflowInstanceRow.started_at)
        if status is not None:
            stmt = stmt.where(WorkflowInstanceRow.status == status.value)
        return [_instance(row) for row in await self._all(stmt)]

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: StepExecution) -> None:
        self._session.add(
            StepExecutionRow(
                id=execution.id,
                instance_id=execution.instance_id,
                step_id=execution.step_id,
                step_number=execution.step_number,
                step_name=execution.step_name,
                assigned_role=execution.assigned_role,
                assigned_user=execution.assigned_user,
                status=execution.status.value,
                action_by=execution.action_by,
                action_at=execution.action_at,
                comments=execution.comments,
                due_date=execution.due_date,
                created_at=execution.created_at,
                escalated_from=execution.escalated_from,
                delegated_from=execution.delegated_from,
            )
        )
        await self._session.flush()

    async def get_execution(self, execution_id: str) -> StepExecution | None:
        row = await self._session.get(StepExecutionRow, execution_id)
        return _execution(row) if row else None

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        rows = await self._all(
            select(StepExecutionRow)
            .where(StepExecutionRow.instance_id == instance_id)
            .order_by(StepExecutionRow.created_at)
        )
        return [_execution(row) for row in rows]

    async def transition_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        expected: ExecutionStatus = ExecutionStatus.PENDING,
        due_before: Optional[datetime] = None,
        **fields: Any,
    ) -> bool:
        stmt = update(StepExecutionRow).where(
            StepExecutionRow.id == execution_id,
            StepExecutionRow.status == expected.value,
        )
        if due_before is not None:
            stmt = stmt.where(
                StepExecutionRow.due_date.is_not(None),
                StepExecutionRow.due_date < due_before,
            )
        result = await self._session.execute(
            stmt.values(status=status.value, **fields).execution_options(
                synchronize_session=False
            )
        )
        # rows loaded earlier in this transaction are stale now; reload on next query
        self._session.expire_all()
        return result.rowcount == 1

    async def pending_executions(self, approver: str) -> list[StepExecution]:
        rows = await self._all(
            select(StepExecutionRow).where(
                StepExecutionRow.status == ExecutionStatus.PENDING.value,
                or_(
                    StepExecutionRow.assigned_role == approver,
                    StepExecutionRow.assigned_user == approver,
                ),
            )
        )
        return [_execution(row) for row in rows]

    async def overdue_executions(self, now: datetime) -> list[StepExecution]:
        rows = await self._all(
            select(StepExecutionRow)
            .where(
                StepExecutionRow.status == ExecutionStatus.PENDING.value,
                StepExecutionRow.due_date.is_not(None),
                StepExecutionRow.due_date < now,
            )
            .order_by(StepExecutionRow.due_date)
        )
        return [_execution(row) for row in rows]

    # ------------------------------------------------------------------
    # Audit
    async def insert_audit(self, entry: AuditEntry) -> None:
        self._session.add(
            AuditEntryRow(
                id=entry.id,
                instance_id=entry.instance_id,
                execution_id=entry.execution_id,
                action=entry.action.value,
                performed_by=entry.performed_by,
                details=dict(entry.details),
                created_at=entry.created_at,
            )
        )
        await self._session.flush()

    async def list_audit(self, instance_id: str) -> list[AuditEntry]:
        rows = await self._all(
            select(AuditEntryRow)
            .where(AuditEntryRow.instance_id == instance_id)
            .order_by(AuditEntryRow.created_at)
        )
        return [_audit(row) for row in rows]


class SQLWorkflowRepository(WorkflowRepository):
    """Persist workflow state through SQLAlchemy's async engine.

    Each transaction maps onto one ``AsyncSession`` transaction. SQLite only
    allows a single writer, so transactions against it are serialised.
    """

    def __init__(self, database_url: str) -> None:
        self.db = ApprovalDB(database_url)
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock() if self.db.is_sqlite else None

    async def _ensure_schema(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if not self._initialized:
                await self.db.init_db()
                self._initialized = True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLWorkflowSession]:
        await self._ensure_schema()
        async with self._write_lock or nullcontext():
            async with self.db.session() as session:
                async with session.begin():
                    yield SQLWorkflowSession(session)

    async def close(self) -> None:
        await self.db.dispose()
