"""Tests for stale node reconciliation."""

import asyncio

import pytest

from edgeflow.engine.reconciler import StaleNodeReconciler
from edgeflow.errors import NodeStateConflictError
from edgeflow.graph import EdgeDefinition, GraphDefinition, NodeDefinition
from edgeflow.runtime import EventType
from edgeflow.schemas.run import NodeStatus, RunStatus


def _worker(node_id: str) -> NodeDefinition:
    return NodeDefinition(
        id=node_id, type="Worker", config={"webhook_url": f"http://workers.test/{node_id}"}
    )


@pytest.fixture
def definition() -> GraphDefinition:
    return GraphDefinition(
        nodes=[_worker("slow"), _worker("after")],
        edges=[EdgeDefinition(id="e1", source="slow", target="after")],
    )


async def _start(engine, definition) -> str:
    version = await engine.save_version("stale", definition)
    return await engine.start_run(version.version_id)


@pytest.mark.asyncio
async def test_fresh_nodes_left_alone(engine, definition):
    run_id = await _start(engine, definition)

    report = await StaleNodeReconciler(engine).reconcile_once()

    assert report.failed == []
    assert (await engine.get_run(run_id)).node_states["slow"].status == NodeStatus.RUNNING


@pytest.mark.asyncio
async def test_stale_node_marked_failed(engine, definition):
    run_id = await _start(engine, definition)

    report = await StaleNodeReconciler(engine, stale_after_seconds=0).reconcile_once()

    assert report.failed == [(run_id, "slow")]
    assert report.retried == []
    assert report.to_dict()["failed"] == [{"run_id": run_id, "node_id": "slow"}]

    run = await engine.get_run(run_id)
    assert run.node_states["slow"].status == NodeStatus.FAILED
    assert "staleness threshold" in run.node_states["slow"].error
    assert run.status == RunStatus.FAILED

    stale_events = engine.event_bus.get_history(event_type=EventType.NODE_STALE)
    assert stale_events[0].node_id == "slow"


@pytest.mark.asyncio
async def test_late_callback_after_stale_failure_conflicts(engine, definition):
    run_id = await _start(engine, definition)
    await StaleNodeReconciler(engine, stale_after_seconds=0).reconcile_once()

    with pytest.raises(NodeStateConflictError):
        await engine.handle_callback(run_id, "slow", {"status": "completed"})


@pytest.mark.asyncio
async def test_auto_retry_respects_limit(engine, dispatcher, definition):
    run_id = await _start(engine, definition)
    reconciler = StaleNodeReconciler(engine, stale_after_seconds=0, auto_retry=True, max_retries=1)

    first = await reconciler.reconcile_once()
    assert first.retried == [(run_id, "slow")]
    state = (await engine.get_run(run_id)).node_states["slow"]
    assert state.status == NodeStatus.RUNNING
    assert state.attempts == 2

    second = await reconciler.reconcile_once()
    assert second.failed == [(run_id, "slow")]
    assert second.retried == []
    assert (await engine.get_run(run_id)).node_states["slow"].status == NodeStatus.FAILED
    assert dispatcher.node_ids == ["slow", "slow"]


@pytest.mark.asyncio
async def test_defaults_come_from_config(engine_factory):
    engine = engine_factory(stale_after_seconds=30, auto_retry_stale=True, max_stale_retries=3)
    reconciler = StaleNodeReconciler(engine)

    assert reconciler.stale_after.total_seconds() == 30
    assert reconciler.auto_retry is True
    assert reconciler.max_retries == 3


@pytest.mark.asyncio
async def test_background_loop(engine, definition):
    run_id = await _start(engine, definition)
    reconciler = StaleNodeReconciler(engine, stale_after_seconds=0)

    await reconciler.start(interval=0.01)
    try:
        for _ in range(100):
            if (await engine.get_run(run_id)).node_states["slow"].status == NodeStatus.FAILED:
                break
            await asyncio.sleep(0.01)
    finally:
        await reconciler.stop()

    assert (await engine.get_run(run_id)).node_states["slow"].status == NodeStatus.FAILED
