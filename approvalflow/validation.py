"""Structural validation of workflow templates.

Validation is pure and runs in memory. Errors block a template from being
saved or activated; warnings are advisory and are returned alongside so a
builder UI can surface them next to the offending step.
"""

from __future__ import annotations

from collections import Counter
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from .config import ValidationConfig
from .constants import MAX_DESCRIPTION_LENGTH, MAX_TEMPLATE_NAME_LENGTH
from .models import MODULES, WorkflowStep, WorkflowTemplate
from .sinks import RoleDirectory


class ValidationIssue(BaseModel):
    severity: Literal["error", "warning"]
    message: str
    step_index: Optional[int] = None
    field: Optional[str] = None


class ValidationReport(BaseModel):
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def for_step(self, step_index: int) -> List[ValidationIssue]:
        """All issues reported against the step at ``step_index``."""
        return [i for i in self.errors + self.warnings if i.step_index == step_index]

    def summary(self) -> str:
        if self.is_valid:
            if self.warnings:
                return f"Workflow is valid with {len(self.warnings)} warning(s)"
            return "Workflow is valid and ready to save"
        return f"Cannot save: {len(self.errors)} error(s) must be fixed"


def _error(message: str, step_index: Optional[int] = None, field: Optional[str] = None):
    return ValidationIssue(severity="error", message=message, step_index=step_index, field=field)


def _warning(message: str, step_index: Optional[int] = None, field: Optional[str] = None):
    return ValidationIssue(severity="warning", message=message, step_index=step_index, field=field)


class TemplateValidator:
    """Checks templates and steps for structural correctness."""

    def __init__(
        self,
        config: ValidationConfig | None = None,
        directory: RoleDirectory | None = None,
    ) -> None:
        self.config = config or ValidationConfig()
        self.directory = directory

    def validate(self, template: WorkflowTemplate) -> ValidationReport:
        report = ValidationReport()
        self._check_header(template, report)
        self._check_steps(template.steps, report)
        if self.directory is not None:
            self._check_directory(template.steps, report)
        return report

    def validate_step(
        self, step: WorkflowStep, step_index: int, all_steps: Sequence[WorkflowStep]
    ) -> List[ValidationIssue]:
        """Validate one step in isolation, against its siblings for numbering."""
        issues: List[ValidationIssue] = []

        if not (step.step_name or "").strip():
            issues.append(_error("Step name is required", step_index, "step_name"))

        has_role = bool((step.required_role or "").strip())
        has_user = bool((step.assigned_user or "").strip())
        if not has_role and not has_user:
            issues.append(
                _error(
                    "Either a role or specific user must be assigned",
                    step_index,
                    "approver",
                )
            )
        elif has_role and has_user:
            issues.append(
                _error(
                    "A step cannot be assigned to both a role and a specific user",
                    step_index,
                    "approver",
                )
            )

        if step.step_number <= 0:
            issues.append(_error("Step number must be positive", step_index, "step_number"))
        duplicates = [
            i
            for i, other in enumerate(all_steps)
            if i != step_index and other.step_number == step.step_number
        ]
        if duplicates:
            issues.append(
                _error(
                    f"Step number {step.step_number} is used by multiple steps",
                    step_index,
                    "step_number",
                )
            )

        if step.timeout_days is not None and step.timeout_days <= 0:
            issues.append(_error("Timeout days must be positive", step_index, "timeout_days"))
        if step.escalation_role and not step.timeout_days:
            issues.append(
                _error(
                    "Timeout days required when escalation role is set",
                    step_index,
                    "timeout_days",
                )
            )

        if not step.timeout_days:
            issues.append(
                _warning(
                    f"Step {step.step_number} has no timeout and may stay pending indefinitely",
                    step_index,
                    "timeout_days",
                )
            )
        elif step.timeout_days > self.config.max_step_timeout_days:
            issues.append(
                _warning(
                    f"Step {step.step_number} timeout exceeds "
                    f"{self.config.max_step_timeout_days} days",
                    step_index,
                    "timeout_days",
                )
            )
        if not step.can_delegate:
            issues.append(
                _warning(
                    f"Step {step.step_number} cannot be delegated and may become a bottleneck",
                    step_index,
                    "can_delegate",
                )
            )
        return issues

    # ------------------------------------------------------------------
    def _check_header(self, template: WorkflowTemplate, report: ValidationReport) -> None:
        name = (template.name or "").strip()
        if not name:
            report.errors.append(_error("Workflow name is required", field="name"))
        elif len(name) > MAX_TEMPLATE_NAME_LENGTH:
            report.errors.append(
                _error(
                    f"Workflow name must be {MAX_TEMPLATE_NAME_LENGTH} characters or less",
                    field="name",
                )
            )
        if template.description and len(template.description) > MAX_DESCRIPTION_LENGTH:
            report.errors.append(
                _error(
                    f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less",
                    field="description",
                )
            )
        if not template.module:
            report.errors.append(_error("Module selection is required", field="module"))
        elif template.module not in MODULES:
            report.errors.append(
                _error(f"Invalid module {template.module!r}", field="module")
            )

    def _check_steps(self, steps: Sequence[WorkflowStep], report: ValidationReport) -> None:
        if not steps:
            report.errors.append(
                _error("Workflow must have at least one approval step", field="steps")
            )
            return
        if len(steps) > self.config.max_steps:
            report.errors.append(
                _error(
                    f"Workflow cannot have more than {self.config.max_steps} steps",
                    field="steps",
                )
            )

        for index, step in enumerate(steps):
            for issue in self.validate_step(step, index, steps):
                target = report.errors if issue.severity == "error" else report.warnings
                target.append(issue)

        self._check_sequence(steps, report)

        total = sum(s.timeout_days or 0 for s in steps)
        if total > self.config.max_total_timeout_days:
            report.warnings.append(
                _warning(
                    f"Worst-case duration of {total} days exceeds "
                    f"{self.config.max_total_timeout_days} days",
                    field="timeout_days",
                )
            )
        if not any(s.is_mandatory for s in steps):
            report.warnings.append(
                _warning("No mandatory steps defined - all steps can be skipped", field="is_mandatory")
            )
        names = Counter((s.step_name or "").strip().lower() for s in steps)
        for index, step in enumerate(steps):
            key = (step.step_name or "").strip().lower()
            if key and names[key] > 1:
                report.warnings.append(
                    _warning(
                        f"Step name {step.step_name!r} is used more than once",
                        index,
                        "step_name",
                    )
                )

    def _check_sequence(self, steps: Sequence[WorkflowStep], report: ValidationReport) -> None:
        """Step numbers must form 1..N; report each step that breaks it."""
        expected = set(range(1, len(steps) + 1))
        counts = Counter(s.step_number for s in steps)
        for index, step in enumerate(steps):
            # duplicates and non-positive numbers are already reported per step
            if step.step_number not in expected and step.step_number > 0 and counts[step.step_number] == 1:
                report.errors.append(
                    _error(
                        f"Step numbers must be sequential starting from 1; "
                        f"step {step.step_number} is outside 1..{len(steps)}",
                        index,
                        "step_number",
                    )
                )
        missing = sorted(expected - set(counts))
        if missing and not any(i.field == "step_number" for i in report.errors):
            report.errors.append(
                _error(
                    f"Gap detected in step sequence: missing step(s) {missing}",
                    field="step_number",
                )
            )

    def _check_directory(self, steps: Sequence[WorkflowStep], report: ValidationReport) -> None:
        """Cross-check step approvers against the organisation's role directory."""
        seen: set = set()
        for index, step in enumerate(steps):
            for field, role in (
                ("required_role", step.required_role),
                ("escalation_role", step.escalation_role),
            ):
                role = (role or "").strip()
                if not role or (field, role) in seen:
                    continue
                seen.add((field, role))
                if not self.directory.role_exists(role):
                    report.errors.append(
                        _error(f"Role {role!r} does not exist in the system", index, field)
                    )
                elif field == "required_role" and not self.directory.resolve_approver(role):
                    report.warnings.append(
                        _warning(f"Role {role!r} has no active users assigned", index, field)
                    )
            user = (step.assigned_user or "").strip()
            if user and ("assigned_user", user) not in seen and not self.directory.user_exists(user):
                seen.add(("assigned_user", user))
                report.errors.append(
                    _error(
                        f"User {user!r} does not exist or is inactive", index, "assigned_user"
                    )
                )


def validate_template(
    template: WorkflowTemplate,
    config: ValidationConfig | None = None,
    directory: RoleDirectory | None = None,
) -> ValidationReport:
    """Convenience wrapper around :class:`TemplateValidator`."""
    return TemplateValidator(config, directory).validate(template)
