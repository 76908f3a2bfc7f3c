import asyncio

import pytest
from typer.testing import CliRunner

import approvalflow.persistence as persistence
from approvalflow import ApprovalEngine, ApprovalFlowConfig, WorkflowStep
from approvalflow.cli import app
from approvalflow.persistence import InMemoryWorkflowRepository

TEMPLATE_YAML = """
name: TRF standard
module: trf
description: Travel requests
steps:
  - step_name: Focal
    required_role: Focal
    timeout_days: 7
  - step_name: Manager
    required_role: Manager
    timeout_days: 7
    escalation_role: Director
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("APPROVALFLOW_CONFIG", "APPROVALFLOW_DATABASE_URL", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _engine(repo) -> ApprovalEngine:
    return ApprovalEngine(repo, config=ApprovalFlowConfig())


def _seed(repo):
    engine = _engine(repo)
    steps = [
        WorkflowStep(step_number=1, step_name="Focal", required_role="Focal", timeout_days=7),
        WorkflowStep(step_number=2, step_name="Manager", required_role="Manager"),
    ]
    template = asyncio.run(engine.create_template("TRF standard", "trf", steps))
    instance = asyncio.run(engine.start_instance(template.id, "trf-1", "trf", "alice"))
    return template, instance


def test_template_list_and_show():
    repo = _setup_repo()
    template, _ = _seed(repo)

    runner = CliRunner()
    result = runner.invoke(app, ["template", "list"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert template.id in result.stdout
    assert "TRF standard" in result.stdout
    assert "2 step(s)" in result.stdout

    result = runner.invoke(app, ["template", "show", template.id])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "1. Focal -> Focal (timeout 7d)" in result.stdout
    assert "2. Manager -> Manager" in result.stdout

    missing = runner.invoke(app, ["template", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Template 'missing-id' not found" in missing.stdout


def test_template_validate_file(tmp_path):
    _setup_repo()
    good = tmp_path / "good.yaml"
    good.write_text(TEMPLATE_YAML)
    bad = tmp_path / "bad.yaml"
    bad.write_text("name: Broken\nmodule: trf\nsteps:\n  - step_name: Nobody\n")

    runner = CliRunner()
    result = runner.invoke(app, ["template", "validate", str(good)])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Workflow is valid" in result.stdout

    result = runner.invoke(app, ["template", "validate", str(bad)])
    assert result.exit_code == 1
    assert "ERROR step 1: Either a role or specific user must be assigned [approver]" in (
        result.stdout
    )


def test_template_create_and_deactivate(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "trf.yaml"
    path.write_text(TEMPLATE_YAML)

    runner = CliRunner()
    result = runner.invoke(app, ["template", "create", str(path), "--created-by", "admin"])
    assert result.exit_code == 0, f"Output: {result.stdout}"

    (template,) = asyncio.run(_engine(repo).list_templates())
    assert template.created_by == "admin"
    assert [s.step_number for s in template.steps] == [1, 2]

    duplicate = runner.invoke(app, ["template", "create", str(path)])
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.stdout

    result = runner.invoke(app, ["template", "deactivate", template.id])
    assert result.exit_code == 0
    assert asyncio.run(_engine(repo).list_templates()) == []


def test_queue_decide_and_instance_show():
    repo = _setup_repo()
    _, instance = _seed(repo)
    (execution,) = asyncio.run(_engine(repo).list_executions(instance.id))

    runner = CliRunner()
    result = runner.invoke(app, ["queue", "Focal"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert execution.id in result.stdout
    assert "trf trf-1" in result.stdout

    result = runner.invoke(app, ["decide", execution.id, "approve", "--actor", "fiona"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert f"Instance {instance.id}: pending" in result.stdout

    again = runner.invoke(app, ["decide", execution.id, "approve", "--actor", "fiona"])
    assert again.exit_code == 1
    assert "already approved" in again.stdout

    result = runner.invoke(app, ["instance", "show", instance.id])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Current step: 2" in result.stdout
    assert "Focal [Focal]: approved by fiona" in result.stdout
    assert "started by alice" in result.stdout

    missing = runner.invoke(app, ["instance", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Instance 'missing-id' not found" in missing.stdout

    empty = runner.invoke(app, ["queue", "Focal"])
    assert "No pending approvals" in empty.stdout


def test_decide_rejects_unknown_action():
    _setup_repo()
    result = CliRunner().invoke(app, ["decide", "some-id", "maybe", "--actor", "fiona"])
    assert result.exit_code == 1
    assert "Action must be 'approve' or 'reject'" in result.stdout


def test_instance_cancel():
    repo = _setup_repo()
    _, instance = _seed(repo)

    result = CliRunner().invoke(
        app, ["instance", "cancel", instance.id, "--actor", "alice", "--reason", "duplicate"]
    )
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "cancelled" in result.stdout


def test_sweep_without_overdue_work():
    repo = _setup_repo()
    _seed(repo)
    result = CliRunner().invoke(app, ["sweep"])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Escalated 0 execution(s)" in result.stdout


def test_simulate_file(tmp_path):
    _setup_repo()
    path = tmp_path / "trf.yaml"
    path.write_text(TEMPLATE_YAML)

    runner = CliRunner()
    result = runner.invoke(
        app, ["simulate", str(path), "-a", "timeout", "-a", "approve", "--seed", "1"]
    )
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Final status: timeout" in result.stdout
    assert "ISSUE No escalation configured for step 1" in result.stdout
    assert "RECOMMENDATION Step 1 has no escalation path configured" in result.stdout

    bad = runner.invoke(app, ["simulate", str(path), "-a", "maybe"])
    assert bad.exit_code == 1


@pytest.mark.parametrize(
    "command",
    [["template", "validate"], ["template", "create"], ["simulate"]],
)
def test_unreadable_template_file_fails_cleanly(tmp_path, command):
    _setup_repo()
    malformed = tmp_path / "malformed.yaml"
    malformed.write_text("name: [unclosed\n")
    no_module = tmp_path / "no_module.yaml"
    no_module.write_text("name: Orphan\nsteps:\n  - step_name: HR\n    required_role: HR\n")

    runner = CliRunner()
    for path in (malformed, no_module, tmp_path / "missing.yaml"):
        result = runner.invoke(app, [*command, str(path)])
        assert result.exit_code == 1, f"Output: {result.stdout}"
        assert isinstance(result.exception, SystemExit)
        assert f"Could not load template from {path}" in result.stdout


def test_commands_close_the_engine(monkeypatch):
    repo = _setup_repo()
    closed = []

    async def close():
        closed.append(True)

    monkeypatch.setattr(repo, "close", close)
    runner = CliRunner()
    assert runner.invoke(app, ["template", "list"]).exit_code == 0
    assert runner.invoke(app, ["template", "show", "missing"]).exit_code == 1
    assert closed == [True, True]
