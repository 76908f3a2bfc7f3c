"""Command line interface for operating approval workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from approvalflow import ApprovalEngine, WorkflowTemplate, get_repository, load_config
from approvalflow.cli_utils.templates import format_report, load_template_file
from approvalflow.errors import ApprovalFlowError, ValidationError

app = typer.Typer(help="CLI for approval workflows")

# Command groups
template_app = typer.Typer(help="Commands for managing workflow templates")
instance_app = typer.Typer(help="Commands for inspecting workflow instances")

app.add_typer(template_app, name="template")
app.add_typer(instance_app, name="instance")


def _engine() -> ApprovalEngine:
    config = load_config()
    return ApprovalEngine(get_repository(), config=config)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _load(path: Path) -> WorkflowTemplate:
    try:
        return load_template_file(path)
    except (OSError, TypeError, ValueError, yaml.YAMLError) as exc:
        _fail(f"Could not load template from {path}: {exc}")


def _run(call):
    """Run ``call(engine)`` on a fresh engine and close it afterwards."""

    async def _main():
        engine = _engine()
        try:
            return await call(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except ValidationError as exc:
        for line in format_report(exc.report):
            typer.echo(line)
        _fail(exc.message)
    except ApprovalFlowError as exc:
        _fail(exc.message)


@app.callback()
def main() -> None:
    """Approvalflow CLI entry point."""
    logging.basicConfig(
        level=load_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@template_app.command("list")
def template_list(
    module: Optional[str] = None,
    include_inactive: bool = typer.Option(False, "--all", help="Include deactivated templates"),
) -> None:
    """
    List workflow templates with their module and step count.

    Example:
        approvalflow template list --module trf
    """
    templates = _run(lambda engine: engine.list_templates(module, include_inactive))
    if not templates:
        typer.echo("No templates found")
        return
    for t in templates:
        state = "active" if t.is_active else "inactive"
        typer.echo(f"{t.id}\t{t.module}\t{t.name}\t{len(t.steps)} step(s)\t{state}")


@template_app.command("show")
def template_show(template_id: str) -> None:
    """Show a template and its ordered steps."""
    t = _run(lambda engine: engine.get_template(template_id))
    typer.echo(f"Template {t.name} ({t.module}): {'active' if t.is_active else 'inactive'}")
    if t.description:
        typer.echo(f"Description: {t.description}")
    for step in t.steps:
        approver = step.assigned_user or step.required_role
        extras = []
        if step.timeout_days:
            extras.append(f"timeout {step.timeout_days}d")
        if step.escalation_role:
            extras.append(f"escalates to {step.escalation_role}")
        if step.can_delegate:
            extras.append("delegable")
        suffix = f" ({', '.join(extras)})" if extras else ""
        typer.echo(f"{step.step_number}. {step.step_name} -> {approver}{suffix}")


@template_app.command("validate")
def template_validate(path: Path) -> None:
    """
    Validate a YAML template definition without saving it.

    Exits with code 1 when the template has errors; warnings alone pass.

    Example:
        approvalflow template validate ./templates/trf.yaml
    """
    template = _load(path)
    report = _engine().validate_template(template)
    for line in format_report(report):
        typer.echo(line)
    typer.echo(report.summary())
    if not report.is_valid:
        raise typer.Exit(code=1)


@template_app.command("create")
def template_create(path: Path, created_by: Optional[str] = None) -> None:
    """Validate and persist a YAML template definition."""
    template = _load(path)
    created = _run(
        lambda engine: engine.create_template(
            template.name,
            template.module,
            template.steps,
            description=template.description,
            created_by=created_by,
        )
    )
    typer.echo(f"Created template {created.id}")


@template_app.command("deactivate")
def template_deactivate(template_id: str) -> None:
    """Deactivate a template; existing instances keep referencing it."""
    _run(lambda engine: engine.deactivate_template(template_id))
    typer.echo(f"Deactivated template {template_id}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its step executions and audit trail.

    Example:
        approvalflow instance show 6f1c...
    """

    async def _show(engine):
        instance = await engine.get_instance(instance_id)
        return (
            instance,
            await engine.list_executions(instance_id),
            await engine.audit_trail(instance_id),
        )

    instance, executions, audit = _run(_show)
    typer.echo(
        f"Instance {instance.id}: {instance.status.value} "
        f"({instance.entity_type} {instance.entity_id})"
    )
    if instance.current_step_number is not None:
        typer.echo(f"Current step: {instance.current_step_number}")
    for e in executions:
        assignee = e.assigned_user or e.assigned_role
        actor = f" by {e.action_by}" if e.action_by else ""
        due = f" due {e.due_date:%Y-%m-%d}" if e.due_date else ""
        typer.echo(f"- {e.step_number}. {e.step_name} [{assignee}]: {e.status.value}{actor}{due}")
    for entry in audit:
        who = entry.performed_by or "system"
        typer.echo(f"  {entry.created_at:%Y-%m-%d %H:%M} {entry.action.value} by {who}")


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Cancel a pending instance."""
    instance = _run(lambda engine: engine.cancel_instance(instance_id, actor, reason))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@app.command("queue")
def queue(approver: str) -> None:
    """
    List pending executions for a role or user, earliest deadline first.

    Example:
        approvalflow queue "Line Manager"
    """
    items = _run(lambda engine: engine.list_pending_for_approver(approver))
    if not items:
        typer.echo("No pending approvals")
        return
    for item in items:
        e = item.execution
        due = f"{e.due_date:%Y-%m-%d}" if e.due_date else "-"
        typer.echo(
            f"{e.id}\t{item.template_name}\t{item.instance.entity_type} "
            f"{item.instance.entity_id}\tstep {e.step_number} {e.step_name}\tdue {due}"
        )


@app.command("decide")
def decide(
    execution_id: str,
    action: str = typer.Argument(..., help="approve or reject"),
    actor: str = typer.Option(..., help="User taking the action"),
    comments: Optional[str] = None,
) -> None:
    """Approve or reject a pending step execution."""
    if action not in ("approve", "reject"):
        _fail("Action must be 'approve' or 'reject'")
    instance = _run(lambda engine: engine.decide_step(execution_id, action, actor, comments))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@app.command("sweep")
def sweep() -> None:
    """Escalate overdue pending executions to their escalation roles."""
    escalated = _run(lambda engine: engine.sweep_overdue())
    typer.echo(f"Escalated {len(escalated)} execution(s)")
    for e in escalated:
        typer.echo(f"- {e.id}: step {e.step_number} -> {e.assigned_role}")


@app.command("simulate")
def simulate_command(
    path: Path,
    action: Optional[List[str]] = typer.Option(
        None, "--action", "-a", help="Action per step: approve, reject, timeout or delegate"
    ),
    seed: Optional[int] = None,
) -> None:
    """
    Dry-run a YAML template against scripted actions.

    Example:
        approvalflow simulate ./templates/trf.yaml -a approve -a timeout --seed 1
    """
    template = _load(path)
    try:
        report = _engine().simulate(template, action or [], seed=seed)
    except ValueError as exc:
        _fail(str(exc))
    typer.echo(f"Final status: {report.final_status}")
    typer.echo(f"Total duration: {report.total_duration} day(s)")
    for step in report.steps:
        typer.echo(f"- {step.step_number}. {step.step_name}: {step.status} after {step.days}d")
    for issue in report.issues:
        typer.echo(f"ISSUE {issue}")
    for rec in report.recommendations:
        typer.echo(f"RECOMMENDATION {rec}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
