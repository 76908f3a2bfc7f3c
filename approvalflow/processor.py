"""Applies approver decisions to pending step executions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Union

from .errors import ConfigurationError, ConflictError, NotFoundError
from .models import (
    AuditAction,
    AuditEntry,
    Decision,
    ExecutionStatus,
    InstanceStatus,
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    new_id,
)
from .persistence import WorkflowRepository, WorkflowSession
from .runtime import InstanceRuntime
from .sinks import EventBatch

logger = logging.getLogger(__name__)


class StepProcessor:
    """Decides, delegates and escalates step executions.

    Every call is one repository transaction. The guard against double
    decisions is a conditional update on the execution's ``pending`` status,
    so of two concurrent calls on the same execution exactly one wins.
    """

    def __init__(self, repository: WorkflowRepository, runtime: InstanceRuntime) -> None:
        self._repository = repository
        self._runtime = runtime

    async def decide(
        self,
        execution_id: str,
        action: Union[Decision, str],
        actor: str,
        comments: Optional[str] = None,
    ) -> WorkflowInstance:
        """Approve or reject a pending execution and move its instance on.

        Raises:
            NotFoundError: the execution does not exist.
            ConflictError: the execution is no longer pending.
        """
        decision = Decision(action)
        status = (
            ExecutionStatus.APPROVED if decision is Decision.APPROVE else ExecutionStatus.REJECTED
        )
        batch = EventBatch()

        async with self._repository.transaction() as session:
            claimed = await session.transition_execution(
                execution_id,
                status,
                action_by=actor,
                action_at=self._runtime.now(),
                comments=comments,
            )
            if not claimed:
                await self._raise_unclaimable(session, execution_id)

            execution = await session.get_execution(execution_id)
            instance = await session.get_instance(execution.instance_id)
            if instance is None:
                raise NotFoundError("Instance", execution.instance_id)
            if instance.status.is_terminal:
                raise ConflictError(
                    f"Instance {instance.id} is already {instance.status.value}"
                )

            await session.insert_audit(
                AuditEntry(
                    instance_id=instance.id,
                    execution_id=execution_id,
                    action=AuditAction.APPROVED
                    if decision is Decision.APPROVE
                    else AuditAction.REJECTED,
                    performed_by=actor,
                    details={"step_number": execution.step_number, "comments": comments},
                    created_at=self._runtime.now(),
                )
            )
            if decision is Decision.APPROVE:
                instance = await self._runtime.advance(
                    session, instance, execution.step_number, batch, actor
                )
            else:
                # rejection is final, no requeue to an earlier step
                instance = await self._runtime.terminate(
                    session, instance, InstanceStatus.REJECTED, batch
                )

        logger.info(
            f"{actor} {status.value} step {execution.step_number} of instance {instance.id}"
        )
        await batch.dispatch(self._runtime.events)
        return instance

    async def delegate(
        self,
        execution_id: str,
        actor: str,
        *,
        to_user: Optional[str] = None,
        to_role: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> StepExecution:
        """Hand a pending step to another user or role.

        The current execution is closed as ``delegated`` and a replacement
        pending execution for the same step keeps the original deadline.
        """
        if bool(to_user) == bool(to_role):
            raise ValueError("Exactly one of to_user or to_role must be given")
        batch = EventBatch()

        async with self._repository.transaction() as session:
            execution = await session.get_execution(execution_id)
            if execution is None:
                raise NotFoundError("Execution", execution_id)
            if execution.status != ExecutionStatus.PENDING:
                raise ConflictError(
                    f"Execution {execution_id} is already {execution.status.value}"
                )
            step = await self._step_of(session, execution)
            if step is None or not step.can_delegate:
                raise ConfigurationError(
                    f"Step {execution.step_number} ({execution.step_name}) does not allow delegation"
                )

            now = self._runtime.now()
            if not await session.transition_execution(
                execution_id,
                ExecutionStatus.DELEGATED,
                action_by=actor,
                action_at=now,
                comments=comments,
            ):
                await self._raise_unclaimable(session, execution_id)

            replacement = self._replacement(
                execution, now, assigned_user=to_user, assigned_role=to_role,
                delegated_from=execution.id,
            )
            await session.insert_execution(replacement)
            await session.insert_audit(
                AuditEntry(
                    instance_id=execution.instance_id,
                    execution_id=replacement.id,
                    action=AuditAction.DELEGATED,
                    performed_by=actor,
                    details={
                        "from": execution.assigned_user or execution.assigned_role,
                        "to": to_user or to_role,
                        "comments": comments,
                    },
                    created_at=now,
                )
            )
            batch.step_assigned(replacement)

        logger.info(
            f"{actor} delegated step {execution.step_number} of instance "
            f"{execution.instance_id} to {to_user or to_role}"
        )
        await batch.dispatch(self._runtime.events)
        return replacement

    async def sweep_overdue(self, now: Optional[datetime] = None) -> List[StepExecution]:
        """Reassign overdue pending executions to their step's escalation role.

        Safe to call repeatedly: only executions still pending with a passed
        due date are touched, and replacements carry no due date.
        """
        now = now or self._runtime.now()
        batch = EventBatch()
        escalated: List[StepExecution] = []

        async with self._repository.transaction() as session:
            for execution in await session.overdue_executions(now):
                step = await self._step_of(session, execution)
                role = step.escalation_role if step else None
                if not role:
                    logger.warning(
                        f"Execution {execution.id} is overdue but step "
                        f"{execution.step_number} has no escalation role"
                    )
                    continue
                if not await session.transition_execution(
                    execution.id,
                    ExecutionStatus.ESCALATED,
                    due_before=now,
                    action_at=now,
                    comments=f"Escalated to {role} after timeout",
                ):
                    continue
                replacement = self._replacement(
                    execution, now, assigned_role=role, assigned_user=None,
                    due_date=None, escalated_from=execution.id,
                )
                await session.insert_execution(replacement)
                await session.insert_audit(
                    AuditEntry(
                        instance_id=execution.instance_id,
                        execution_id=replacement.id,
                        action=AuditAction.ESCALATED,
                        details={
                            "from": execution.assigned_user or execution.assigned_role,
                            "to": role,
                        },
                        created_at=now,
                    )
                )
                batch.step_assigned(replacement)
                escalated.append(replacement)

        if escalated:
            logger.info(f"Escalated {len(escalated)} overdue execution(s)")
        await batch.dispatch(self._runtime.events)
        return escalated

    # ------------------------------------------------------------------
    @staticmethod
    def _replacement(execution: StepExecution, now: datetime, **changes) -> StepExecution:
        fields = dict(
            id=new_id(),
            status=ExecutionStatus.PENDING,
            action_by=None,
            action_at=None,
            comments=None,
            created_at=now,
            escalated_from=None,
            delegated_from=None,
        )
        fields.update(changes)
        return execution.model_copy(update=fields)

    @staticmethod
    async def _step_of(
        session: WorkflowSession, execution: StepExecution
    ) -> Optional[WorkflowStep]:
        instance = await session.get_instance(execution.instance_id)
        if instance is None:
            return None
        template = await session.get_template(instance.template_id)
        return template.step_by_number(execution.step_number) if template else None

    @staticmethod
    async def _raise_unclaimable(session: WorkflowSession, execution_id: str) -> None:
        execution = await session.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        raise ConflictError(
            f"Execution {execution_id} is already {execution.status.value}"
        )
