"""Persistence-facing operations on workflow templates."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .errors import ConflictError, NotFoundError, ValidationError
from .models import InstanceStatus, WorkflowStep, WorkflowTemplate, new_id, utcnow
from .persistence import WorkflowRepository
from .validation import TemplateValidator, ValidationIssue

logger = logging.getLogger(__name__)


class TemplateStore:
    """Create, update, read and deactivate templates with their steps.

    Every write validates first and runs in a single transaction: the header
    row is persisted, then the whole step set is replaced.
    """

    def __init__(
        self, repository: WorkflowRepository, validator: TemplateValidator | None = None
    ) -> None:
        self._repository = repository
        self._validator = validator or TemplateValidator()

    def _check(self, template: WorkflowTemplate) -> None:
        report = self._validator.validate(template)
        if not report.is_valid:
            logger.info(f"Rejected template {template.name!r}: {report.summary()}")
            raise ValidationError(report)

    def _duplicate_name(self, template: WorkflowTemplate) -> ValidationError:
        report = self._validator.validate(template)
        report.errors.append(
            ValidationIssue(
                severity="error",
                message=(
                    f"A workflow named {template.name!r} already exists "
                    f"for {template.module} module"
                ),
                field="name",
            )
        )
        return ValidationError(report)

    async def create(
        self, template: WorkflowTemplate, steps: Sequence[WorkflowStep] | None = None
    ) -> WorkflowTemplate:
        """Persist a new template. ``steps`` overrides ``template.steps``."""
        now = utcnow()
        candidate = template.model_copy(
            update={
                "id": template.id or new_id(),
                "steps": list(steps if steps is not None else template.steps),
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )
        self._check(candidate)

        async with self._repository.transaction() as session:
            if await session.find_template_by_name(candidate.name, candidate.module):
                raise self._duplicate_name(candidate)
            await session.insert_template(candidate)
            await session.replace_steps(candidate.id, candidate.steps)
            created = await session.get_template(candidate.id)

        logger.info(
            f"Created template {created.name!r} ({created.id}) "
            f"for {created.module} with {len(created.steps)} step(s)"
        )
        return created

    async def update(
        self,
        template_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        module: Optional[str] = None,
        is_active: Optional[bool] = None,
        steps: Optional[Sequence[WorkflowStep]] = None,
    ) -> WorkflowTemplate:
        """Update header fields and optionally replace the step set.

        Step changes are refused while any instance of the template is still
        pending, because those instances point at the current steps.
        """
        async with self._repository.transaction() as session:
            current = await session.get_template(template_id)
            if current is None:
                raise NotFoundError("Template", template_id)

            changes = {
                key: value
                for key, value in {
                    "name": name,
                    "description": description,
                    "module": module,
                    "is_active": is_active,
                }.items()
                if value is not None
            }
            changes["updated_at"] = utcnow()
            if steps is not None:
                changes["steps"] = [s.model_copy(update={"id": None}) for s in steps]
            candidate = current.model_copy(update=changes, deep=True)
            self._check(candidate)

            if candidate.is_active:
                clash = await session.find_template_by_name(candidate.name, candidate.module)
                if clash is not None and clash.id != template_id:
                    raise self._duplicate_name(candidate)

            if steps is not None:
                in_flight = await session.count_instances(template_id, InstanceStatus.PENDING)
                if in_flight:
                    raise ConflictError(
                        f"Template {template_id} has {in_flight} pending instance(s); "
                        "its steps cannot change until they complete"
                    )
                await session.replace_steps(template_id, candidate.steps)

            await session.update_template(candidate)
            updated = await session.get_template(template_id)

        logger.info(f"Updated template {updated.name!r} ({template_id})")
        return updated

    async def get(self, template_id: str) -> WorkflowTemplate:
        async with self._repository.transaction() as session:
            template = await session.get_template(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    async def list(
        self, module: Optional[str] = None, include_inactive: bool = False
    ) -> List[WorkflowTemplate]:
        async with self._repository.transaction() as session:
            return await session.list_templates(module, include_inactive)

    async def deactivate(self, template_id: str) -> None:
        """Soft-delete: history keeps referencing the template."""
        async with self._repository.transaction() as session:
            template = await session.get_template(template_id)
            if template is None:
                raise NotFoundError("Template", template_id)
            template.is_active = False
            template.updated_at = utcnow()
            await session.update_template(template)
        logger.info(f"Deactivated template {template_id}")
