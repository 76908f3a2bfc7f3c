"""Tests for template validation."""

from approvalflow import (
    StaticRoleDirectory,
    TemplateValidator,
    WorkflowStep,
    WorkflowTemplate,
    validate_template,
)
from approvalflow.config import ValidationConfig


def _step(number, name=None, role="Manager", user=None, **kwargs):
    return WorkflowStep(
        step_number=number,
        step_name=name or f"Step {number}",
        required_role=role,
        assigned_user=user,
        **kwargs,
    )


def _template(steps, **kwargs):
    kwargs.setdefault("name", "TRF approval")
    kwargs.setdefault("module", "trf")
    return WorkflowTemplate(steps=steps, **kwargs)


def test_valid_template_has_no_errors():
    template = _template(
        [_step(1, timeout_days=3, can_delegate=True), _step(2, timeout_days=5, can_delegate=True)]
    )
    report = validate_template(template)

    assert report.is_valid
    assert report.errors == []
    assert [s.step_number for s in template.steps] == [1, 2]
    assert report.summary() == "Workflow is valid and ready to save"


def test_header_errors():
    report = validate_template(_template([_step(1)], name="  ", module="payroll"))
    fields = {issue.field for issue in report.errors}
    assert fields == {"name", "module"}


def test_name_and_description_length_limits():
    report = validate_template(_template([_step(1)], name="x" * 101, description="d" * 501))
    assert {issue.field for issue in report.errors} == {"name", "description"}


def test_template_needs_steps():
    report = validate_template(_template([]))
    assert not report.is_valid
    assert report.errors[0].field == "steps"


def test_step_limit_comes_from_config():
    validator = TemplateValidator(ValidationConfig(max_steps=2))
    report = validator.validate(_template([_step(1), _step(2), _step(3)]))
    assert any("more than 2 steps" in issue.message for issue in report.errors)


def test_gap_in_step_numbers_reports_offending_step():
    report = validate_template(_template([_step(1), _step(3)]))
    assert not report.is_valid
    offending = [i for i in report.errors if i.field == "step_number"]
    assert [i.step_index for i in offending] == [1]


def test_duplicate_step_numbers_report_each_step():
    report = validate_template(_template([_step(1), _step(2), _step(2)]))
    indexes = sorted(i.step_index for i in report.errors if i.field == "step_number")
    assert indexes == [1, 2]


def test_non_positive_step_number():
    report = validate_template(_template([_step(0), _step(1)]))
    assert any(i.step_index == 0 and i.field == "step_number" for i in report.errors)


def test_step_without_approver():
    report = validate_template(_template([_step(1), _step(2, role=None)]))
    approver = [i for i in report.errors if i.field == "approver"]
    assert len(approver) == 1
    assert approver[0].step_index == 1


def test_step_with_role_and_user():
    report = validate_template(_template([_step(1, user="alice")]))
    approver = [i for i in report.errors if i.field == "approver"]
    assert [i.step_index for i in approver] == [0]


def test_escalation_requires_timeout():
    report = validate_template(_template([_step(1, escalation_role="Director")]))
    assert any(
        i.field == "timeout_days" and i.step_index == 0 for i in report.errors
    )


def test_non_positive_timeout_is_error():
    for days in (0, -2):
        report = validate_template(_template([_step(1, timeout_days=days)]))
        assert any(i.field == "timeout_days" for i in report.errors)


def test_warnings_do_not_block():
    template = _template(
        [
            _step(1, timeout_days=15, is_mandatory=False),
            _step(2, timeout_days=35, is_mandatory=False),
        ]
    )
    report = validate_template(template)

    assert report.is_valid
    messages = " ".join(i.message for i in report.warnings)
    assert "exceeds 30 days" in messages
    assert "Worst-case duration of 50 days" in messages
    assert "No mandatory steps" in messages
    assert "cannot be delegated" in messages
    assert report.summary().startswith("Workflow is valid with")


def test_missing_timeout_and_duplicate_names_warn():
    report = validate_template(_template([_step(1, name="Review"), _step(2, name="review")]))
    assert report.is_valid
    timeouts = [i for i in report.warnings if "no timeout" in i.message]
    assert len(timeouts) == 2
    dupes = [i for i in report.warnings if "used more than once" in i.message]
    assert [i.step_index for i in dupes] == [0, 1]


def test_validate_step_and_for_step():
    steps = [_step(1), _step(2, role=None)]
    validator = TemplateValidator()
    issues = validator.validate_step(steps[1], 1, steps)
    assert any(i.field == "approver" for i in issues)

    report = validator.validate(_template(steps))
    assert all(i.step_index == 1 for i in report.for_step(1))
    assert report.summary() == f"Cannot save: {len(report.errors)} error(s) must be fixed"


def _directory():
    return StaticRoleDirectory(
        {"Manager": ["mark"], "Finance": ["fiona"], "Board": []}, users=["lena"]
    )


def test_directory_flags_unknown_roles_and_users():
    steps = [
        _step(1, timeout_days=3, escalation_role="Director"),
        _step(2, role="Auditor"),
        _step(3, role=None, user="ghost"),
    ]
    report = validate_template(_template(steps), directory=_directory())

    assert not report.is_valid
    issues = {(i.step_index, i.field): i.message for i in report.errors}
    assert issues[(0, "escalation_role")] == "Role 'Director' does not exist in the system"
    assert issues[(1, "required_role")] == "Role 'Auditor' does not exist in the system"
    assert issues[(2, "assigned_user")] == "User 'ghost' does not exist or is inactive"


def test_directory_warns_on_role_without_users():
    steps = [
        _step(1, timeout_days=3, escalation_role="Board"),
        _step(2, role="Board"),
        _step(3, role=None, user="mark"),
        _step(4, role=None, user="lena"),
    ]
    report = TemplateValidator(directory=_directory()).validate(_template(steps))

    assert report.is_valid
    (empty,) = [i for i in report.warnings if i.field == "required_role"]
    assert empty.message == "Role 'Board' has no active users assigned"
    assert empty.step_index == 1


def test_directory_checks_are_skipped_without_directory():
    report = validate_template(_template([_step(1, role="Auditor", timeout_days=3)]))
    assert report.is_valid
