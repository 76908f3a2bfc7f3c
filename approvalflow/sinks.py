"""Collaborator interfaces the engine talks to.

The engine never special-cases entity types: outcomes are pushed through an
:class:`EntityStatusRegistry` populated at startup, and lifecycle events go to
an :class:`EventSink` for the notification layer.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Protocol

from .models import StepExecution, WorkflowInstance

logger = logging.getLogger(__name__)

StatusSetter = Callable[[str, str], Awaitable[None]]


class EntityStatusRegistry:
    """Dispatch table ``entity_type -> async setter(entity_id, status)``."""

    def __init__(self, setters: Mapping[str, StatusSetter] | None = None) -> None:
        self._setters: Dict[str, StatusSetter] = dict(setters or {})

    def register(self, entity_type: str, setter: StatusSetter) -> None:
        self._setters[entity_type] = setter

    def __contains__(self, entity_type: str) -> bool:
        return entity_type in self._setters

    async def set_status(self, entity_type: str, entity_id: str, status: str) -> bool:
        """Push ``status`` onto the business record.

        Returns ``True`` when the owning sink accepted the update. Failures are
        logged and reported as ``False`` so the workflow transition stands and a
        reconciliation pass can retry later.
        """
        setter = self._setters.get(entity_type)
        if setter is None:
            logger.warning(
                f"No status sink registered for entity type {entity_type!r}; "
                f"entity {entity_id} left as is"
            )
            return False
        try:
            await setter(entity_id, status)
        except Exception:
            logger.exception(
                f"Failed to set status {status!r} on {entity_type} {entity_id}"
            )
            return False
        logger.info(f"Set {entity_type} {entity_id} status to {status}")
        return True


class EventSink(Protocol):
    """Fire-and-forget hooks for the notification layer."""

    async def on_step_assigned(self, execution: StepExecution) -> None:
        """A new pending execution awaits its approver."""

    async def on_instance_completed(self, instance: WorkflowInstance) -> None:
        """An instance reached a terminal status."""


class LoggingEventSink(EventSink):
    """Default sink that only records events in the log."""

    async def on_step_assigned(self, execution: StepExecution) -> None:
        assignee = execution.assigned_user or execution.assigned_role
        logger.info(
            f"Step {execution.step_number} ({execution.step_name}) of instance "
            f"{execution.instance_id} assigned to {assignee}"
        )

    async def on_instance_completed(self, instance: WorkflowInstance) -> None:
        logger.info(f"Instance {instance.id} completed with status {instance.status.value}")


class RoleDirectory(Protocol):
    """Resolves roles to the users that currently hold them."""

    def resolve_approver(self, role: str) -> List[str]:
        """Return active user ids holding ``role``."""

    def role_exists(self, role: str) -> bool:
        """Whether ``role`` is defined, even if nobody holds it."""

    def user_exists(self, user_id: str) -> bool:
        """Whether ``user_id`` is a known, active user."""


class StaticRoleDirectory(RoleDirectory):
    """Role directory backed by a fixed mapping.

    ``users`` lists active users that hold no role; everyone named in
    ``roles`` is active too.
    """

    def __init__(
        self,
        roles: Mapping[str, Iterable[str]] | None = None,
        users: Iterable[str] = (),
    ) -> None:
        self._roles = {role: list(members) for role, members in (roles or {}).items()}
        self._users = set(users)
        for members in self._roles.values():
            self._users.update(members)

    def resolve_approver(self, role: str) -> List[str]:
        return list(self._roles.get(role, []))

    def role_exists(self, role: str) -> bool:
        return role in self._roles

    def user_exists(self, user_id: str) -> bool:
        return user_id in self._users


class EventBatch:
    """Events collected during a transaction and dispatched after commit."""

    def __init__(self) -> None:
        self._assigned: List[StepExecution] = []
        self._completed: List[WorkflowInstance] = []

    def step_assigned(self, execution: StepExecution) -> None:
        self._assigned.append(execution.model_copy())

    def instance_completed(self, instance: WorkflowInstance) -> None:
        self._completed.append(instance.model_copy())

    async def dispatch(self, sink: EventSink) -> None:
        for execution in self._assigned:
            try:
                await sink.on_step_assigned(execution)
            except Exception:
                logger.exception(f"Event sink failed for step assignment {execution.id}")
        for instance in self._completed:
            try:
                await sink.on_instance_completed(instance)
            except Exception:
                logger.exception(f"Event sink failed for completion of {instance.id}")
