"""Public entry point wiring the validator, store, runtime and processor."""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .config import ApprovalFlowConfig, load_config
from .models import (
    AuditEntry,
    Decision,
    PendingItem,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from .persistence import WorkflowRepository, get_repository
from .processor import StepProcessor
from .runtime import InstanceRuntime
from .simulator import Script, SimulationReport, simulate
from .sinks import EntityStatusRegistry, EventSink, RoleDirectory
from .templates import TemplateStore
from .validation import TemplateValidator, ValidationReport

logger = logging.getLogger(__name__)


class ApprovalEngine:
    """Library surface of the approval workflow engine."""

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        *,
        status_sinks: EntityStatusRegistry | None = None,
        events: EventSink | None = None,
        directory: RoleDirectory | None = None,
        config: ApprovalFlowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.status_sinks = status_sinks or EntityStatusRegistry()
        self.directory = directory
        self.validator = TemplateValidator(self.config.validation, directory)
        self.templates = TemplateStore(self.repository, self.validator)
        self.runtime = InstanceRuntime(
            self.repository,
            status_sinks=self.status_sinks,
            events=events,
            config=self.config,
            clock=clock,
        )
        self.processor = StepProcessor(self.repository, self.runtime)

    # ------------------------------------------------------------------
    # Templates
    def validate_template(self, template: WorkflowTemplate) -> ValidationReport:
        return self.validator.validate(template)

    async def create_template(
        self,
        name: str,
        module: str,
        steps: Sequence[WorkflowStep],
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> WorkflowTemplate:
        template = WorkflowTemplate(
            name=name, module=module, description=description, created_by=created_by
        )
        return await self.templates.create(template, steps)

    async def update_template(
        self,
        template_id: str,
        name: Optional[str] = None,
        steps: Optional[Sequence[WorkflowStep]] = None,
        description: Optional[str] = None,
        module: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> WorkflowTemplate:
        return await self.templates.update(
            template_id,
            name=name,
            steps=steps,
            description=description,
            module=module,
            is_active=is_active,
        )

    async def deactivate_template(self, template_id: str) -> None:
        await self.templates.deactivate(template_id)

    async def get_template(self, template_id: str) -> WorkflowTemplate:
        return await self.templates.get(template_id)

    async def list_templates(
        self, module: Optional[str] = None, include_inactive: bool = False
    ) -> List[WorkflowTemplate]:
        return await self.templates.list(module, include_inactive)

    # ------------------------------------------------------------------
    # Instances
    async def start_instance(
        self,
        template_id: str,
        entity_id: str,
        entity_type: str,
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        return await self.runtime.start(
            template_id, entity_id, entity_type, initiated_by, metadata
        )

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        return await self.runtime.get(instance_id)

    async def list_executions(self, instance_id: str) -> List[StepExecution]:
        await self.runtime.get(instance_id)
        async with self.repository.transaction() as session:
            return await session.list_executions(instance_id)

    async def audit_trail(self, instance_id: str) -> List[AuditEntry]:
        await self.runtime.get(instance_id)
        async with self.repository.transaction() as session:
            return await session.list_audit(instance_id)

    async def list_pending_for_approver(self, role_or_user: str) -> List[PendingItem]:
        return await self.runtime.pending_for_approver(role_or_user)

    async def cancel_instance(
        self, instance_id: str, actor: Optional[str] = None, reason: Optional[str] = None
    ) -> WorkflowInstance:
        return await self.runtime.cancel(instance_id, actor, reason)

    async def resync_entity_status(self, instance_id: str) -> bool:
        return await self.runtime.resync_entity_status(instance_id)

    async def unsynced_instances(self) -> List[WorkflowInstance]:
        return await self.runtime.unsynced_instances()

    # ------------------------------------------------------------------
    # Decisions
    async def decide_step(
        self,
        execution_id: str,
        action: Union[Decision, str],
        actor: str,
        comments: Optional[str] = None,
    ) -> WorkflowInstance:
        return await self.processor.decide(execution_id, action, actor, comments)

    async def delegate_step(
        self,
        execution_id: str,
        actor: str,
        *,
        to_user: Optional[str] = None,
        to_role: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> StepExecution:
        return await self.processor.delegate(
            execution_id, actor, to_user=to_user, to_role=to_role, comments=comments
        )

    async def sweep_overdue(self, now: Optional[datetime] = None) -> List[StepExecution]:
        return await self.processor.sweep_overdue(now)

    # ------------------------------------------------------------------
    def simulate(
        self, template: WorkflowTemplate, script: Script, seed: Optional[int] = None
    ) -> SimulationReport:
        return simulate(template, script, rng=random.Random(seed), config=self.config)

    def describe_assignees(self, execution: StepExecution) -> List[str]:
        """Users who can act on ``execution``, for display only."""
        if execution.assigned_user:
            return [execution.assigned_user]
        if self.directory is None or not execution.assigned_role:
            return []
        return self.directory.resolve_approver(execution.assigned_role)

    async def close(self) -> None:
        await self.repository.close()
