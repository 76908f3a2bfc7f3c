"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from ..models import (
    AuditEntry,
    ExecutionStatus,
    InstanceStatus,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
    new_id,
)
from .repository import WorkflowRepository, WorkflowSession


class _State:
    def __init__(self) -> None:
        self.templates: Dict[str, WorkflowTemplate] = {}
        self.steps: Dict[str, List[WorkflowStep]] = {}
        self.instances: Dict[str, WorkflowInstance] = {}
        self.executions: Dict[str, StepExecution] = {}
        self.audit: List[AuditEntry] = []


class InMemoryWorkflowSession(WorkflowSession):
    """Session over the shared in-memory state.

    Models are copied on the way in and out so callers only change stored
    state through the session API.
    """

    def __init__(self, state: _State) -> None:
        self._state = state

    # ------------------------------------------------------------------
    # Templates
    async def insert_template(self, template: WorkflowTemplate) -> None:
        header = template.model_copy(update={"steps": []}, deep=True)
        self._state.templates[header.id] = header
        self._state.steps.setdefault(header.id, [])

    async def update_template(self, template: WorkflowTemplate) -> bool:
        if template.id not in self._state.templates:
            return False
        self._state.templates[template.id] = template.model_copy(
            update={"steps": []}, deep=True
        )
        return True

    async def replace_steps(self, template_id: str, steps: list[WorkflowStep]) -> None:
        self._state.steps[template_id] = [
            step.model_copy(
                update={"id": step.id or new_id(), "template_id": template_id}, deep=True
            )
            for step in steps
        ]

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        header = self._state.templates.get(template_id)
        if header is None:
            return None
        steps = sorted(self._state.steps.get(template_id, []), key=lambda s: s.step_number)
        return header.model_copy(
            update={"steps": [s.model_copy(deep=True) for s in steps]}, deep=True
        )

    async def list_templates(
        self, module: Optional[str] = None, include_inactive: bool = False
    ) -> list[WorkflowTemplate]:
        templates = []
        for template_id, header in self._state.templates.items():
            if module is not None and header.module != module:
                continue
            if not include_inactive and not header.is_active:
                continue
            templates.append(await self.get_template(template_id))
        return sorted(templates, key=lambda t: t.name)

    async def find_template_by_name(
        self, name: str, module: str
    ) -> WorkflowTemplate | None:
        for header in self._state.templates.values():
            if header.name == name and header.module == module and header.is_active:
                return await self.get_template(header.id)
        return None

    async def count_instances(self, template_id: str, status: InstanceStatus) -> int:
        return sum(
            1
            for inst in self._state.instances.values()
            if inst.template_id == template_id and inst.status == status
        )

    # ------------------------------------------------------------------
    # Instances
    async def insert_instance(self, instance: WorkflowInstance) -> None:
        self._state.instances[instance.id] = instance.model_copy(deep=True)

    async def update_instance(self, instance: WorkflowInstance) -> None:
        self._state.instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        inst = self._state.instances.get(instance_id)
        return inst.model_copy(deep=True) if inst else None

    async def find_pending_instance(
        self, template_id: str, entity_type: str, entity_id: str
    ) -> WorkflowInstance | None:
        for inst in self._state.instances.values():
            if (
                inst.template_id == template_id
                and inst.entity_type == entity_type
                and inst.entity_id == entity_id
                and inst.status == InstanceStatus.PENDING
            ):
                return inst.model_copy(deep=True)
        return None

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        instances = [
            inst.model_copy(deep=True)
            for inst in self._state.instances.values()
            if status is None or inst.status == status
        ]
        return sorted(instances, key=lambda i: i.started_at)

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: StepExecution) -> None:
        self._state.executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> StepExecution | None:
        execution = self._state.executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        # dicts keep insertion order, which is creation order here
        return [
            e.model_copy(deep=True)
            for e in self._state.executions.values()
            if e.instance_id == instance_id
        ]

    async def transition_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        expected: ExecutionStatus = ExecutionStatus.PENDING,
        due_before: Optional[datetime] = None,
        **fields: Any,
    ) -> bool:
        execution = self._state.executions.get(execution_id)
        if execution is None or execution.status != expected:
            return False
        if due_before is not None and (
            execution.due_date is None or execution.due_date >= due_before
        ):
            return False
        self._state.executions[execution_id] = execution.model_copy(
            update={"status": status, **fields}
        )
        return True

    async def pending_executions(self, approver: str) -> list[StepExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._state.executions.values()
            if e.status == ExecutionStatus.PENDING and e.is_assigned_to(approver)
        ]

    async def overdue_executions(self, now: datetime) -> list[StepExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._state.executions.values()
            if e.status == ExecutionStatus.PENDING
            and e.due_date is not None
            and e.due_date < now
        ]

    # ------------------------------------------------------------------
    # Audit
    async def insert_audit(self, entry: AuditEntry) -> None:
        self._state.audit.append(entry.model_copy(deep=True))

    async def list_audit(self, instance_id: str) -> list[AuditEntry]:
        return [
            e.model_copy(deep=True) for e in self._state.audit if e.instance_id == instance_id
        ]


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Transactions are serialised and a
    failed transaction restores the state it started from.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryWorkflowSession]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemoryWorkflowSession(self._state)
            except BaseException:
                self._state = snapshot
                raise

    async def close(self) -> None:
        return None
