"""Instance lifecycle: start, advance, terminate and the approver queue."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import ApprovalFlowConfig
from .errors import ConfigurationError, ConflictError, NotFoundError
from .models import (
    AuditAction,
    AuditEntry,
    ExecutionStatus,
    InstanceStatus,
    PendingItem,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
    utcnow,
)
from .persistence import WorkflowRepository, WorkflowSession
from .sinks import EntityStatusRegistry, EventBatch, EventSink, LoggingEventSink

logger = logging.getLogger(__name__)

_NO_DEADLINE = datetime.max.replace(tzinfo=timezone.utc)


class InstanceRuntime:
    """State machine of a workflow instance.

    ``pending`` is the only non-terminal status. ``advance`` and ``terminate``
    run inside a caller-owned session so the step processor can combine them
    with its own execution update in one transaction.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        status_sinks: EntityStatusRegistry | None = None,
        events: EventSink | None = None,
        config: ApprovalFlowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._status_sinks = status_sinks or EntityStatusRegistry()
        self._events = events or LoggingEventSink()
        self._config = config or ApprovalFlowConfig()
        self._clock = clock or utcnow

    @property
    def events(self) -> EventSink:
        return self._events

    def now(self) -> datetime:
        return self._clock()

    def new_execution(
        self, instance: WorkflowInstance, step: WorkflowStep, **overrides: Any
    ) -> StepExecution:
        """Build the pending execution for ``step``, assignee taken from the step."""
        now = self.now()
        fields: Dict[str, Any] = dict(
            instance_id=instance.id,
            step_id=step.id,
            step_number=step.step_number,
            step_name=step.step_name,
            assigned_role=step.required_role if not step.assigned_user else None,
            assigned_user=step.assigned_user,
            due_date=step.due_date(now),
            created_at=now,
        )
        fields.update(overrides)
        return StepExecution(**fields)

    # ------------------------------------------------------------------
    async def start(
        self,
        template_id: str,
        entity_id: str,
        entity_type: str,
        initiated_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Bind ``entity_id`` to the template and open its first step."""
        batch = EventBatch()
        async with self._repository.transaction() as session:
            template = await session.get_template(template_id)
            if template is None:
                raise NotFoundError("Template", template_id)
            if not template.is_active:
                raise ConfigurationError(f"Template {template.name!r} is not active")
            first = template.first_step()
            if first is None:
                raise ConfigurationError(f"Template {template.name!r} has no steps")
            existing = await session.find_pending_instance(template_id, entity_type, entity_id)
            if existing is not None:
                raise ConflictError(
                    f"{entity_type} {entity_id} already has pending instance {existing.id}"
                )

            instance = WorkflowInstance(
                template_id=template_id,
                entity_id=entity_id,
                entity_type=entity_type,
                current_step_id=first.id,
                current_step_number=first.step_number,
                initiated_by=initiated_by,
                started_at=self.now(),
                metadata=dict(metadata or {}),
            )
            await session.insert_instance(instance)
            execution = self.new_execution(instance, first)
            await session.insert_execution(execution)
            await session.insert_audit(
                AuditEntry(
                    instance_id=instance.id,
                    execution_id=execution.id,
                    action=AuditAction.STARTED,
                    performed_by=initiated_by,
                    details={"template": template.name},
                    created_at=self.now(),
                )
            )
            batch.step_assigned(execution)

        logger.info(
            f"Started instance {instance.id} of {template.name!r} for "
            f"{entity_type} {entity_id}"
        )
        await batch.dispatch(self._events)
        return instance

    async def advance(
        self,
        session: WorkflowSession,
        instance: WorkflowInstance,
        from_step_number: int,
        batch: EventBatch,
        actor: Optional[str] = None,
    ) -> WorkflowInstance:
        """Move to the step after ``from_step_number`` or complete as approved."""
        template = await self._template(session, instance.template_id)
        next_step = template.step_after(from_step_number)
        if next_step is not None:
            execution = self.new_execution(instance, next_step)
            await session.insert_execution(execution)
            instance.current_step_id = next_step.id
            instance.current_step_number = next_step.step_number
            await session.update_instance(instance)
            batch.step_assigned(execution)
            logger.info(
                f"Instance {instance.id} advanced to step {next_step.step_number} "
                f"({next_step.step_name})"
            )
            return instance

        await self._finish(session, instance, InstanceStatus.APPROVED, batch)
        await session.insert_audit(
            AuditEntry(
                instance_id=instance.id,
                action=AuditAction.COMPLETED,
                performed_by=actor,
                details={"status": instance.status.value},
                created_at=self.now(),
            )
        )
        return instance

    async def terminate(
        self,
        session: WorkflowSession,
        instance: WorkflowInstance,
        outcome: InstanceStatus,
        batch: EventBatch,
    ) -> WorkflowInstance:
        """End the instance as rejected or cancelled."""
        if outcome not in (InstanceStatus.REJECTED, InstanceStatus.CANCELLED):
            raise ValueError(f"terminate() cannot set status {outcome.value!r}")
        await self._finish(session, instance, outcome, batch)
        return instance

    async def cancel(
        self, instance_id: str, actor: Optional[str] = None, reason: Optional[str] = None
    ) -> WorkflowInstance:
        """Withdraw a pending instance; its open step is marked skipped."""
        batch = EventBatch()
        async with self._repository.transaction() as session:
            instance = await self._pending_instance(session, instance_id)
            for execution in await session.list_executions(instance_id):
                if execution.status == ExecutionStatus.PENDING:
                    await session.transition_execution(
                        execution.id,
                        ExecutionStatus.SKIPPED,
                        action_by=actor,
                        action_at=self.now(),
                        comments=reason,
                    )
            await self.terminate(session, instance, InstanceStatus.CANCELLED, batch)
            await session.insert_audit(
                AuditEntry(
                    instance_id=instance_id,
                    action=AuditAction.CANCELLED,
                    performed_by=actor,
                    details={"reason": reason} if reason else {},
                    created_at=self.now(),
                )
            )
        await batch.dispatch(self._events)
        return instance

    async def _finish(
        self,
        session: WorkflowSession,
        instance: WorkflowInstance,
        outcome: InstanceStatus,
        batch: EventBatch,
    ) -> None:
        instance.status = outcome
        instance.current_step_id = None
        instance.current_step_number = None
        instance.completed_at = self.now()
        instance.status_synced = await self._status_sinks.set_status(
            instance.entity_type, instance.entity_id, self._config.status_label(outcome.value)
        )
        await session.update_instance(instance)
        batch.instance_completed(instance)
        logger.info(f"Instance {instance.id} finished as {outcome.value}")

    # ------------------------------------------------------------------
    async def get(self, instance_id: str) -> WorkflowInstance:
        async with self._repository.transaction() as session:
            instance = await session.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)
        return instance

    async def pending_for_approver(self, approver: str) -> List[PendingItem]:
        """Open work for a role or user, earliest deadline first.

        Executions without a deadline come last; among equal deadlines the most
        recently started instance comes first.
        """
        items: List[PendingItem] = []
        async with self._repository.transaction() as session:
            templates: Dict[str, WorkflowTemplate] = {}
            for execution in await session.pending_executions(approver):
                instance = await session.get_instance(execution.instance_id)
                if instance is None:
                    continue
                if instance.template_id not in templates:
                    templates[instance.template_id] = await self._template(
                        session, instance.template_id
                    )
                template = templates[instance.template_id]
                items.append(
                    PendingItem(
                        execution=execution,
                        instance=instance,
                        template_name=template.name,
                        module=template.module,
                    )
                )
        items.sort(
            key=lambda item: (
                item.execution.due_date or _NO_DEADLINE,
                -item.instance.started_at.timestamp(),
            )
        )
        return items

    async def resync_entity_status(self, instance_id: str) -> bool:
        """Push a terminal outcome to its entity again, e.g. after a sink outage."""
        async with self._repository.transaction() as session:
            instance = await session.get_instance(instance_id)
            if instance is None:
                raise NotFoundError("Instance", instance_id)
            if not instance.status.is_terminal:
                raise ConflictError(f"Instance {instance_id} is still pending")
            instance.status_synced = await self._status_sinks.set_status(
                instance.entity_type,
                instance.entity_id,
                self._config.status_label(instance.status.value),
            )
            await session.update_instance(instance)
        return bool(instance.status_synced)

    async def unsynced_instances(self) -> List[WorkflowInstance]:
        """Terminal instances whose entity status could not be written."""
        async with self._repository.transaction() as session:
            instances = await session.list_instances()
        return [i for i in instances if i.status.is_terminal and i.status_synced is False]

    # ------------------------------------------------------------------
    async def _template(self, session: WorkflowSession, template_id: str) -> WorkflowTemplate:
        template = await session.get_template(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    async def _pending_instance(
        self, session: WorkflowSession, instance_id: str
    ) -> WorkflowInstance:
        instance = await session.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("Instance", instance_id)
        if instance.status.is_terminal:
            raise ConflictError(
                f"Instance {instance_id} is already {instance.status.value}"
            )
        return instance
