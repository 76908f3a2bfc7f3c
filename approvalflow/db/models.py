from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..models import new_id, utcnow


def _timestamp(nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class WorkflowTemplateRow(SQLModel, table=True):
    """Header row of a workflow template."""

    __tablename__ = "workflow_templates"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    module: str = Field(index=True)
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(False))


class WorkflowStepRow(SQLModel, table=True):
    """One ordered step of a template."""

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("template_id", "step_number"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    template_id: str = Field(foreign_key="workflow_templates.id", index=True)
    step_number: int
    step_name: str
    required_role: Optional[str] = None
    assigned_user: Optional[str] = None
    description: Optional[str] = None
    is_mandatory: bool = True
    can_delegate: bool = False
    timeout_days: Optional[int] = None
    escalation_role: Optional[str] = None


class WorkflowInstanceRow(SQLModel, table=True):
    """A template bound to one business entity."""

    __tablename__ = "workflow_instances"

    id: str = Field(default_factory=new_id, primary_key=True)
    template_id: str = Field(foreign_key="workflow_templates.id", index=True)
    entity_id: str = Field(index=True)
    entity_type: str
    # step ids are not foreign keys: steps are replaced when a template is edited
    current_step_id: Optional[str] = None
    current_step_number: Optional[int] = None
    status: str = Field(default="pending", index=True)
    initiated_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(False))
    completed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    instance_metadata: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    status_synced: Optional[bool] = None


class StepExecutionRow(SQLModel, table=True):
    """A visited step within an instance."""

    __tablename__ = "workflow_step_executions"

    id: str = Field(default_factory=new_id, primary_key=True)
    instance_id: str = Field(foreign_key="workflow_instances.id", index=True)
    step_id: Optional[str] = None
    step_number: int
    step_name: str
    assigned_role: Optional[str] = Field(default=None, index=True)
    assigned_user: Optional[str] = Field(default=None, index=True)
    status: str = Field(default="pending", index=True)
    action_by: Optional[str] = None
    action_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    comments: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(False))
    escalated_from: Optional[str] = None
    delegated_from: Optional[str] = None


class AuditEntryRow(SQLModel, table=True):
    """Append-only audit log of workflow actions."""

    __tablename__ = "workflow_audit_log"

    id: str = Field(default_factory=new_id, primary_key=True)
    instance_id: str = Field(foreign_key="workflow_instances.id", index=True)
    execution_id: Optional[str] = None
    action: str
    performed_by: Optional[str] = None
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp(False))
