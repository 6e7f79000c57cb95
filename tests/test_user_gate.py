"""Tests for UserGate nodes."""

import asyncio

import pytest

from edgeflow.errors import InvalidCallbackError, NodeStateConflictError
from edgeflow.graph import EdgeDefinition, GraphDefinition, NodeDefinition
from edgeflow.runtime import EventType
from edgeflow.schemas.run import NodeStatus, RunStatus
from edgeflow.storage import InMemoryRunStore


def _edge(source: str, target: str) -> EdgeDefinition:
    return EdgeDefinition(id=f"{source}->{target}", source=source, target=target)


@pytest.fixture
def approval_definition() -> GraphDefinition:
    return GraphDefinition(
        nodes=[
            NodeDefinition(
                id="draft", type="Worker", config={"webhook_url": "http://workers.test/draft"}
            ),
            NodeDefinition(id="approve", type="UserGate", config={"prompt": "Ship it?"}),
            NodeDefinition(
                id="publish", type="Worker", config={"webhook_url": "http://workers.test/publish"}
            ),
        ],
        edges=[_edge("draft", "approve"), _edge("approve", "publish")],
    )


async def _reach_gate(engine, definition) -> str:
    version = await engine.save_version("approval", definition)
    run_id = await engine.start_run(version.version_id)
    await engine.handle_callback(
        run_id, "draft", {"status": "completed", "output": {"text": "v1"}}
    )
    return run_id


@pytest.mark.asyncio
async def test_gate_waits_for_user(engine, dispatcher, approval_definition):
    run_id = await _reach_gate(engine, approval_definition)

    run = await engine.get_run(run_id)
    gate = run.node_states["approve"]
    assert gate.status == NodeStatus.WAITING_FOR_USER
    assert gate.input == {"text": "v1"}
    assert run.status == RunStatus.WAITING_FOR_USER
    assert "publish" not in dispatcher.node_ids

    requested = engine.event_bus.get_history(event_type=EventType.USER_INPUT_REQUESTED)
    assert requested[0].node_id == "approve"
    assert requested[0].data == {"prompt": "Ship it?", "input": {"text": "v1"}}


@pytest.mark.asyncio
async def test_completion_continues_the_run(engine, dispatcher, approval_definition):
    run_id = await _reach_gate(engine, approval_definition)

    result = await engine.complete_user_gate(run_id, "approve", {"approved": True})
    assert result.status == NodeStatus.COMPLETED
    assert not result.duplicate

    run = await engine.get_run(run_id)
    assert run.node_states["approve"].output == {"approved": True}
    assert run.status == RunStatus.RUNNING
    assert dispatcher.request_for("publish").input == {"approved": True}


@pytest.mark.asyncio
async def test_second_completion_is_duplicate(engine, dispatcher, approval_definition):
    run_id = await _reach_gate(engine, approval_definition)
    await engine.complete_user_gate(run_id, "approve", {"approved": True})

    again = await engine.complete_user_gate(run_id, "approve", {"approved": False})

    assert again.duplicate
    run = await engine.get_run(run_id)
    assert run.node_states["approve"].output == {"approved": True}
    assert dispatcher.node_ids.count("publish") == 1


@pytest.mark.asyncio
async def test_completing_before_gate_is_reached(engine, approval_definition):
    version = await engine.save_version("approval", approval_definition)
    run_id = await engine.start_run(version.version_id)

    with pytest.raises(NodeStateConflictError):
        await engine.complete_user_gate(run_id, "approve", {"approved": True})


@pytest.mark.asyncio
async def test_only_user_gates_accept_completion(engine, approval_definition):
    run_id = await _reach_gate(engine, approval_definition)
    with pytest.raises(InvalidCallbackError, match="not a UserGate"):
        await engine.complete_user_gate(run_id, "draft", {"approved": True})


@pytest.mark.asyncio
async def test_worker_callback_rejected_for_waiting_gate(engine, approval_definition):
    run_id = await _reach_gate(engine, approval_definition)
    with pytest.raises(NodeStateConflictError):
        await engine.handle_callback(run_id, "approve", {"status": "completed"})


@pytest.mark.asyncio
async def test_gate_as_entry_node(engine):
    definition = GraphDefinition(nodes=[NodeDefinition(id="ask", type="UserGate")])
    version = await engine.save_version("ask", definition)
    run_id = await engine.start_run(version.version_id, input={"question": "name?"})

    run = await engine.get_run(run_id)
    assert run.node_states["ask"].input == {"question": "name?"}
    assert run.status == RunStatus.WAITING_FOR_USER

    await engine.complete_user_gate(run_id, "ask", "Ada")
    snapshot = await engine.get_snapshot(run_id)
    assert snapshot.status == RunStatus.COMPLETED
    assert snapshot.final_outputs == {"ask": "Ada"}


class SlowReadStore(InMemoryRunStore):
    """Delays every full run read so concurrent completions interleave."""

    async def get_run(self, run_id):
        await asyncio.sleep(0.01)
        return await super().get_run(run_id)


@pytest.mark.asyncio
async def test_concurrent_gate_and_callback_complete_the_run(engine_factory):
    engine = engine_factory(store=SlowReadStore())
    definition = GraphDefinition(
        nodes=[
            NodeDefinition(
                id="work", type="Worker", config={"webhook_url": "http://workers.test/work"}
            ),
            NodeDefinition(id="gate", type="UserGate"),
        ]
    )
    version = await engine.save_version("parallel-gate", definition)
    run_id = await engine.start_run(version.version_id)

    await asyncio.gather(
        engine.handle_callback(run_id, "work", {"status": "completed", "output": {"n": 1}}),
        engine.complete_user_gate(run_id, "gate", {"approved": True}),
    )

    run = await engine.get_run(run_id)
    assert run.node_states["work"].status == NodeStatus.COMPLETED
    assert run.node_states["gate"].status == NodeStatus.COMPLETED
    assert run.status == RunStatus.COMPLETED
    assert len(engine.event_bus.get_history(event_type=EventType.RUN_COMPLETED)) == 1
