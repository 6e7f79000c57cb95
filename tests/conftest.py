"""Shared fixtures: a recording worker dispatcher and engines wired to it."""

from pathlib import Path

import pytest

from edgeflow.config import EngineConfig
from edgeflow.engine.dispatch import WorkerDispatcher
from edgeflow.engine.engine import WorkflowEngine
from edgeflow.errors import WorkerExecutionError
from edgeflow.observability import clear_trace_context
from edgeflow.schemas.run import WorkerDispatchRequest
from edgeflow.storage import GraphVersionStore, InMemoryRunStore


class FakeDispatcher(WorkerDispatcher):
    """Records every dispatch instead of calling a worker."""

    def __init__(self):
        self.requests: list[tuple[str, WorkerDispatchRequest]] = []
        self.fail_nodes: set[str] = set()

    async def dispatch(self, endpoint: str, request: WorkerDispatchRequest) -> None:
        if request.node_id in self.fail_nodes:
            raise WorkerExecutionError("worker unavailable", node_id=request.node_id)
        self.requests.append((endpoint, request))

    @property
    def node_ids(self) -> list[str]:
        return [request.node_id for _, request in self.requests]

    def request_for(self, node_id: str) -> WorkerDispatchRequest:
        matches = [r for _, r in self.requests if r.node_id == node_id]
        assert matches, f"{node_id} was never dispatched"
        return matches[-1]


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def engine_factory(tmp_path: Path, dispatcher: FakeDispatcher):
    def _make(store=None, **config_overrides) -> WorkflowEngine:
        config_overrides.setdefault("base_url", "http://engine.test")
        config = EngineConfig(storage_path=tmp_path, **config_overrides)
        return WorkflowEngine(
            store=store or InMemoryRunStore(),
            versions=GraphVersionStore(tmp_path),
            dispatcher=dispatcher,
            config=config,
        )

    return _make


@pytest.fixture
def engine(engine_factory) -> WorkflowEngine:
    return engine_factory()
