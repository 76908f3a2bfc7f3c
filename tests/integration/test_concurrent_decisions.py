"""Concurrent callers racing on the same pending execution."""

import asyncio

import pytest

from approvalflow import ConflictError, ExecutionStatus, InstanceStatus


@pytest.mark.asyncio
async def test_concurrent_decide_has_single_winner(engine, focal_chain, events):
    template = await engine.create_template("TRF", "trf", focal_chain)
    instance = await engine.start_instance(template.id, "trf-1", "trf", "alice")
    (first,) = await engine.list_executions(instance.id)

    results = await asyncio.gather(
        engine.decide_step(first.id, "approve", "fiona"),
        engine.decide_step(first.id, "approve", "frank"),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConflictError)

    executions = await engine.list_executions(instance.id)
    assert len(executions) == 2
    assert [e.status for e in executions].count(ExecutionStatus.PENDING) == 1
    current = await engine.get_instance(instance.id)
    assert current.current_step_number == 2
    assert current.status is InstanceStatus.PENDING
    assert len(events.assigned) == 2


@pytest.mark.asyncio
async def test_concurrent_approve_and_reject(engine, focal_chain, trf_status):
    template = await engine.create_template("TRF", "trf", focal_chain[:1])
    instance = await engine.start_instance(template.id, "trf-2", "trf", "alice")
    (only,) = await engine.list_executions(instance.id)

    results = await asyncio.gather(
        engine.decide_step(only.id, "approve", "fiona"),
        engine.decide_step(only.id, "reject", "frank"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConflictError) for r in results) == 1
    final = await engine.get_instance(instance.id)
    assert final.status in (InstanceStatus.APPROVED, InstanceStatus.REJECTED)
    assert len(trf_status.calls) == 1


@pytest.mark.asyncio
async def test_many_instances_progress_independently(engine, focal_chain):
    template = await engine.create_template("TRF", "trf", focal_chain)
    instances = await asyncio.gather(
        *(engine.start_instance(template.id, f"trf-{n}", "trf", "alice") for n in range(5))
    )

    queue = await engine.list_pending_for_approver("Focal")
    assert len(queue) == 5
    await asyncio.gather(
        *(engine.decide_step(item.execution.id, "approve", "fiona") for item in queue)
    )

    for instance in instances:
        assert (await engine.get_instance(instance.id)).current_step_number == 2
    assert len(await engine.list_pending_for_approver("Manager")) == 5
