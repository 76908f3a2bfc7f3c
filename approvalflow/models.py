"""Domain models for approval templates and their runtime state."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Module(str, Enum):
    """Request types a template can govern."""

    TRF = "trf"
    CLAIMS = "claims"
    VISA = "visa"
    TRANSPORT = "transport"
    ACCOMMODATION = "accommodation"


MODULES = frozenset(m.value for m in Module)


class InstanceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.PENDING


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ESCALATED = "escalated"
    DELEGATED = "delegated"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AuditAction(str, Enum):
    STARTED = "started"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class WorkflowStep(BaseModel):
    """One position in a template, bound to a role or a specific user."""

    id: Optional[str] = None
    template_id: Optional[str] = None
    step_number: int
    step_name: str
    required_role: Optional[str] = None
    assigned_user: Optional[str] = None
    description: Optional[str] = None
    is_mandatory: bool = True
    can_delegate: bool = False
    timeout_days: Optional[int] = None
    escalation_role: Optional[str] = None

    def due_date(self, start: datetime) -> Optional[datetime]:
        """Deadline for an execution of this step started at ``start``."""
        if not self.timeout_days:
            return None
        return start + timedelta(days=self.timeout_days)


class WorkflowTemplate(BaseModel):
    """Named, ordered approval sequence for one request module."""

    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    module: str
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    steps: list[WorkflowStep] = Field(default_factory=list)

    def first_step(self) -> Optional[WorkflowStep]:
        return min(self.steps, key=lambda s: s.step_number) if self.steps else None

    def step_after(self, step_number: int) -> Optional[WorkflowStep]:
        """Return the step with the next higher number, if any."""
        later = [s for s in self.steps if s.step_number > step_number]
        return min(later, key=lambda s: s.step_number) if later else None

    def step_by_number(self, step_number: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None


class WorkflowInstance(BaseModel):
    """A live run of a template against one business entity."""

    id: str = Field(default_factory=new_id)
    template_id: str
    entity_id: str
    entity_type: str
    current_step_id: Optional[str] = None
    current_step_number: Optional[int] = None
    status: InstanceStatus = InstanceStatus.PENDING
    initiated_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status_synced: Optional[bool] = None


class StepExecution(BaseModel):
    """Record of one step being visited and decided within an instance."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_id: Optional[str] = None
    step_number: int
    step_name: str
    assigned_role: Optional[str] = None
    assigned_user: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    action_by: Optional[str] = None
    action_at: Optional[datetime] = None
    comments: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    escalated_from: Optional[str] = None
    delegated_from: Optional[str] = None

    def is_assigned_to(self, approver: str) -> bool:
        return approver in (self.assigned_role, self.assigned_user)


class AuditEntry(BaseModel):
    """Append-only trail of workflow actions."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    execution_id: Optional[str] = None
    action: AuditAction
    performed_by: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class PendingItem(BaseModel):
    """A pending execution joined with its instance and template."""

    execution: StepExecution
    instance: WorkflowInstance
    template_name: str
    module: str
