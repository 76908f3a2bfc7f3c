"""Repository abstraction for approval workflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Optional, Protocol

from ..models import (
    AuditEntry,
    ExecutionStatus,
    InstanceStatus,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)


class WorkflowSession(Protocol):
    """Operations available inside a single repository transaction."""

    async def insert_template(self, template: WorkflowTemplate) -> None:
        """Persist a new template header (steps are written separately)."""

    async def update_template(self, template: WorkflowTemplate) -> bool:
        """Persist template header fields. Returns ``False`` if unknown."""

    async def replace_steps(self, template_id: str, steps: list[WorkflowStep]) -> None:
        """Delete every step of the template and insert ``steps``."""

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        """Template with its steps ordered by step number."""

    async def list_templates(
        self, module: Optional[str] = None, include_inactive: bool = False
    ) -> list[WorkflowTemplate]:
        """Templates ordered by name."""

    async def find_template_by_name(
        self, name: str, module: str
    ) -> WorkflowTemplate | None:
        """Active template with ``name`` in ``module``."""

    async def count_instances(self, template_id: str, status: InstanceStatus) -> int:
        """Number of instances of the template in ``status``."""

    async def insert_instance(self, instance: WorkflowInstance) -> None:
        """Persist a new instance."""

    async def update_instance(self, instance: WorkflowInstance) -> None:
        """Persist the mutable fields of an instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def find_pending_instance(
        self, template_id: str, entity_type: str, entity_id: str
    ) -> WorkflowInstance | None:
        """Pending instance bound to the given entity, if any."""

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        """Instances ordered by start time."""

    async def insert_execution(self, execution: StepExecution) -> None:
        """Persist a new step execution."""

    async def get_execution(self, execution_id: str) -> StepExecution | None:
        """Retrieve a step execution by id."""

    async def list_executions(self, instance_id: str) -> list[StepExecution]:
        """Executions of an instance in creation order."""

    async def transition_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        expected: ExecutionStatus = ExecutionStatus.PENDING,
        due_before: Optional[datetime] = None,
        **fields: Any,
    ) -> bool:
        """Conditionally move an execution out of ``expected``.

        Equivalent to ``UPDATE ... SET status=:status WHERE id=:id AND
        status=:expected``. Returns ``True`` only if a row changed.
        """

    async def pending_executions(self, approver: str) -> list[StepExecution]:
        """Pending executions assigned to the role or user ``approver``."""

    async def overdue_executions(self, now: datetime) -> list[StepExecution]:
        """Pending executions whose due date is before ``now``."""

    async def insert_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry."""

    async def list_audit(self, instance_id: str) -> list[AuditEntry]:
        """Audit entries of an instance in creation order."""


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends."""

    def transaction(self) -> AsyncContextManager[WorkflowSession]:
        """Open a unit of work that commits on success and rolls back on error."""

    async def close(self) -> None:
        """Release backend resources."""
