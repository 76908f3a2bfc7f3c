"""Tests for the template store through the engine."""

import pytest

from approvalflow import (
    ConflictError,
    NotFoundError,
    StaticRoleDirectory,
    ValidationError,
    WorkflowStep,
)


@pytest.mark.asyncio
async def test_create_and_read_template(engine, focal_chain):
    created = await engine.create_template(
        "TRF standard", "trf", focal_chain, description="Travel requests", created_by="admin"
    )

    assert created.id
    assert [s.step_name for s in created.steps] == ["Focal", "Manager", "HOD"]
    assert all(s.id and s.template_id == created.id for s in created.steps)

    fetched = await engine.get_template(created.id)
    assert fetched.name == "TRF standard"
    assert fetched.created_by == "admin"
    assert [s.step_number for s in fetched.steps] == [1, 2, 3]


@pytest.mark.asyncio
async def test_invalid_template_is_not_persisted(engine):
    steps = [WorkflowStep(step_number=1, step_name="Review")]
    with pytest.raises(ValidationError) as exc:
        await engine.create_template("Broken", "trf", steps)

    assert exc.value.code == "E_VALIDATION"
    assert any(i.field == "approver" for i in exc.value.errors)
    assert await engine.list_templates() == []


@pytest.mark.asyncio
async def test_duplicate_name_in_module_is_rejected(engine, focal_chain):
    await engine.create_template("Claims", "claims", focal_chain)
    with pytest.raises(ValidationError) as exc:
        await engine.create_template("Claims", "claims", focal_chain)
    assert any(i.field == "name" for i in exc.value.errors)

    # the same name in another module is fine
    await engine.create_template("Claims", "visa", focal_chain)


@pytest.mark.asyncio
async def test_list_templates_filters(engine, focal_chain):
    trf = await engine.create_template("A TRF", "trf", focal_chain)
    await engine.create_template("B Visa", "visa", focal_chain)
    await engine.deactivate_template(trf.id)

    assert [t.name for t in await engine.list_templates()] == ["B Visa"]
    assert [t.name for t in await engine.list_templates(include_inactive=True)] == [
        "A TRF",
        "B Visa",
    ]
    assert await engine.list_templates(module="trf") == []
    inactive = await engine.list_templates(module="trf", include_inactive=True)
    assert inactive[0].is_active is False


@pytest.mark.asyncio
async def test_update_replaces_steps(engine, focal_chain):
    template = await engine.create_template("Transport", "transport", focal_chain)
    updated = await engine.update_template(
        template.id,
        name="Transport fast track",
        steps=[WorkflowStep(step_number=1, step_name="Fleet", required_role="Fleet")],
    )

    assert updated.name == "Transport fast track"
    assert [s.step_name for s in updated.steps] == ["Fleet"]
    assert (await engine.get_template(template.id)).steps[0].required_role == "Fleet"


@pytest.mark.asyncio
async def test_update_validates(engine, focal_chain):
    template = await engine.create_template("Housing", "accommodation", focal_chain)
    with pytest.raises(ValidationError):
        await engine.update_template(template.id, steps=[])
    assert len((await engine.get_template(template.id)).steps) == 3


@pytest.mark.asyncio
async def test_step_edits_refused_while_instances_pending(engine, focal_chain):
    template = await engine.create_template("TRF", "trf", focal_chain)
    await engine.start_instance(template.id, "trf-1", "trf", "alice")

    with pytest.raises(ConflictError):
        await engine.update_template(template.id, steps=focal_chain[:1])

    # header-only edits still go through
    updated = await engine.update_template(template.id, description="Updated")
    assert updated.description == "Updated"
    assert len(updated.steps) == 3


@pytest.mark.asyncio
async def test_unknown_template(engine):
    with pytest.raises(NotFoundError):
        await engine.get_template("missing")
    with pytest.raises(NotFoundError):
        await engine.update_template("missing", name="x")
    with pytest.raises(NotFoundError):
        await engine.deactivate_template("missing")


@pytest.mark.asyncio
async def test_reactivation_checks_name_clash(engine, focal_chain):
    first = await engine.create_template("Claims", "claims", focal_chain)
    await engine.deactivate_template(first.id)
    await engine.create_template("Claims", "claims", focal_chain)

    with pytest.raises(ValidationError) as exc:
        await engine.update_template(first.id, is_active=True)
    assert any(i.field == "name" for i in exc.value.errors)
    assert (await engine.get_template(first.id)).is_active is False


@pytest.mark.asyncio
async def test_unknown_role_blocks_create(make_engine, focal_chain):
    directory = StaticRoleDirectory({"Focal": ["fred"], "Manager": ["mark"]})
    engine = make_engine(directory=directory)

    with pytest.raises(ValidationError) as exc:
        await engine.create_template("TRF", "trf", focal_chain)
    (issue,) = exc.value.errors
    assert issue.message == "Role 'HOD' does not exist in the system"
    assert issue.step_index == 2
    assert await engine.list_templates() == []
