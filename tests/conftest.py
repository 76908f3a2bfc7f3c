from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from approvalflow import ApprovalEngine, ApprovalFlowConfig, EntityStatusRegistry, WorkflowStep
from approvalflow.persistence import InMemoryWorkflowRepository, SQLWorkflowRepository


class Clock:
    """Deterministic clock that ticks one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingEvents:
    def __init__(self) -> None:
        self.assigned = []
        self.completed = []

    async def on_step_assigned(self, execution) -> None:
        self.assigned.append(execution)

    async def on_instance_completed(self, instance) -> None:
        self.completed.append(instance)


class RecordingStatusSetter:
    def __init__(self, fail: bool = False) -> None:
        self.calls = []
        self.fail = fail

    async def __call__(self, entity_id: str, status: str) -> None:
        if self.fail:
            raise RuntimeError("entity store unavailable")
        self.calls.append((entity_id, status))


@pytest.fixture
def focal_chain():
    """Focal -> Manager -> HOD, seven days per step."""
    return [
        WorkflowStep(step_number=1, step_name="Focal", required_role="Focal", timeout_days=7),
        WorkflowStep(step_number=2, step_name="Manager", required_role="Manager", timeout_days=7),
        WorkflowStep(step_number=3, step_name="HOD", required_role="HOD", timeout_days=7),
    ]


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def trf_status():
    return RecordingStatusSetter()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def repository(request, tmp_path):
    if request.param == "memory":
        repo = InMemoryWorkflowRepository()
    else:
        repo = SQLWorkflowRepository(f"sqlite+aiosqlite:///{tmp_path / 'wf.db'}")
    yield repo
    await repo.close()


@pytest.fixture
def engine(repository, clock, events, trf_status):
    return ApprovalEngine(
        repository,
        status_sinks=EntityStatusRegistry({"trf": trf_status}),
        events=events,
        config=ApprovalFlowConfig(),
        clock=clock,
    )


@pytest.fixture
def failing_status():
    return RecordingStatusSetter(fail=True)


@pytest.fixture
def make_engine(repository, clock, events):
    """Build an engine over the shared repository with custom collaborators."""

    def _make(**kwargs):
        kwargs.setdefault("events", events)
        kwargs.setdefault("config", ApprovalFlowConfig())
        kwargs.setdefault("clock", clock)
        return ApprovalEngine(repository, **kwargs)

    return _make
