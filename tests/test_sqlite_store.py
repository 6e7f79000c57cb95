"""Tests for the run stores, run against both backends."""

import asyncio
from datetime import timedelta

import pytest

from edgeflow.errors import RunNotFoundError, StatusTransitionError
from edgeflow.graph import EdgeDefinition, GraphDefinition, NodeDefinition
from edgeflow.schemas.run import NodeState, NodeStatus, Run, RunStatus, TriggerMetadata, utcnow
from edgeflow.storage import InMemoryRunStore, NodeWrite, SQLiteRunStore


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        store = InMemoryRunStore()
    else:
        store = SQLiteRunStore(tmp_path / "runs.db")
        await store.initialize()
    yield store
    await store.close()


def _run(run_id: str = "run_1", **kwargs) -> Run:
    return Run(id=run_id, version_id="flow_v1", **kwargs)


@pytest.mark.asyncio
async def test_create_and_read_run(store):
    run = _run(
        entity_id="order-9",
        trigger=TriggerMetadata(source="schedule", payload={"cron": "0 * * * *"}),
        input={"limit": 5},
        node_states={"a": NodeState(status=NodeStatus.PENDING, output="seed")},
    )
    await store.create_run(run)

    loaded = await store.get_run("run_1")
    assert loaded.id == "run_1"
    assert loaded.version_id == "flow_v1"
    assert loaded.entity_id == "order-9"
    assert loaded.trigger.source == "schedule"
    assert loaded.trigger.payload == {"cron": "0 * * * *"}
    assert loaded.input == {"limit": 5}
    assert loaded.status == RunStatus.RUNNING
    assert loaded.node_states["a"].output == "seed"

    assert await store.get_run("run_missing") is None


@pytest.mark.asyncio
async def test_compare_and_set(store):
    await store.create_run(_run())
    running = NodeState(status=NodeStatus.RUNNING, attempts=1)

    assert await store.compare_and_set("run_1", "a", NodeStatus.PENDING, running)
    assert not await store.compare_and_set("run_1", "a", NodeStatus.PENDING, running)

    state = await store.get_node_state("run_1", "a")
    assert state.status == NodeStatus.RUNNING
    assert state.attempts == 1
    assert await store.get_node_state("run_1", "b") is None


@pytest.mark.asyncio
async def test_write_batch_is_all_or_nothing(store):
    await store.create_run(_run())
    await store.compare_and_set(
        "run_1", "taken", NodeStatus.PENDING, NodeState(status=NodeStatus.RUNNING)
    )

    ok = await store.write_batch(
        "run_1",
        [
            NodeWrite("split", NodeStatus.PENDING, NodeState(status=NodeStatus.COMPLETED)),
            NodeWrite("taken", NodeStatus.PENDING, NodeState(status=NodeStatus.PENDING)),
        ],
    )

    assert not ok
    assert await store.get_node_state("run_1", "split") is None
    assert (await store.get_node_state("run_1", "taken")).status == NodeStatus.RUNNING

    ok = await store.write_batch(
        "run_1",
        [
            NodeWrite("split", NodeStatus.PENDING, NodeState(status=NodeStatus.COMPLETED)),
            NodeWrite("work_0", NodeStatus.PENDING, NodeState(output="x")),
            NodeWrite("work_1", NodeStatus.PENDING, NodeState(output="y")),
        ],
    )
    assert ok
    run = await store.get_run("run_1")
    assert set(run.node_states) == {"taken", "split", "work_0", "work_1"}


@pytest.mark.asyncio
async def test_writes_to_unknown_run(store):
    with pytest.raises(RunNotFoundError):
        await store.write_batch(
            "run_missing", [NodeWrite("a", NodeStatus.PENDING, NodeState())]
        )


class TestTransition:
    @pytest.mark.asyncio
    async def test_claim_then_complete(self, store):
        await store.create_run(_run())

        claimed = await store.transition(
            "run_1", "a", NodeStatus.RUNNING, expected=[NodeStatus.PENDING], input={"q": 1}
        )
        assert claimed.attempts == 1
        assert claimed.started_at is not None
        assert claimed.input == {"q": 1}

        done = await store.transition("run_1", "a", NodeStatus.COMPLETED, output="answer")
        assert done.completed_at is not None
        assert done.input == {"q": 1}

        stored = await store.get_node_state("run_1", "a")
        assert stored.status == NodeStatus.COMPLETED
        assert stored.output == "answer"

    @pytest.mark.asyncio
    async def test_unexpected_status_returns_none(self, store):
        await store.create_run(_run())
        await store.transition("run_1", "a", NodeStatus.RUNNING)

        assert (
            await store.transition("run_1", "a", NodeStatus.RUNNING, expected=[NodeStatus.PENDING])
            is None
        )

    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, store):
        await store.create_run(_run())
        with pytest.raises(StatusTransitionError):
            await store.transition("run_1", "a", NodeStatus.COMPLETED)
        assert await store.get_node_state("run_1", "a") is None

    @pytest.mark.asyncio
    async def test_retry_clears_previous_result(self, store):
        await store.create_run(_run())
        await store.transition("run_1", "a", NodeStatus.RUNNING, input={"q": 1})
        await store.transition("run_1", "a", NodeStatus.FAILED, error="boom")

        retried = await store.transition(
            "run_1", "a", NodeStatus.RUNNING, expected=[NodeStatus.FAILED]
        )
        assert retried.attempts == 2
        assert retried.error is None
        assert retried.completed_at is None
        assert retried.input == {"q": 1}

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, store):
        await store.create_run(_run())

        results = await asyncio.gather(
            *(
                store.transition("run_1", "a", NodeStatus.RUNNING, expected=[NodeStatus.PENDING])
                for _ in range(5)
            )
        )

        assert sum(1 for r in results if r is not None) == 1
        assert (await store.get_node_state("run_1", "a")).attempts == 1


@pytest.mark.asyncio
async def test_run_status_and_listing(store):
    await store.create_run(_run("run_1"))
    await store.create_run(_run("run_2"))

    finished_at = utcnow()
    await store.set_run_status("run_2", RunStatus.COMPLETED, completed_at=finished_at)

    completed = await store.list_runs(RunStatus.COMPLETED)
    assert [r.id for r in completed] == ["run_2"]
    assert completed[0].completed_at is not None
    assert {r.id for r in await store.list_runs()} == {"run_1", "run_2"}

    with pytest.raises(RunNotFoundError):
        await store.set_run_status("run_missing", RunStatus.FAILED)


@pytest.mark.asyncio
async def test_find_stale_nodes(store):
    await store.create_run(_run())
    await store.transition("run_1", "old", NodeStatus.RUNNING)
    await store.transition("run_1", "done", NodeStatus.RUNNING)
    await store.transition("run_1", "done", NodeStatus.COMPLETED)

    assert await store.find_stale_nodes(utcnow() - timedelta(hours=1)) == []

    stale = await store.find_stale_nodes(utcnow() + timedelta(seconds=1))
    assert [(s.run_id, s.node_id) for s in stale] == [("run_1", "old")]
    assert stale[0].state.status == NodeStatus.RUNNING


@pytest.mark.asyncio
async def test_engine_runs_on_sqlite(engine_factory, dispatcher, tmp_path):
    store = SQLiteRunStore(tmp_path / "engine.db")
    engine = engine_factory(store=store)
    definition = GraphDefinition(
        nodes=[
            NodeDefinition(id="a", type="Worker", config={"webhook_url": "http://workers.test/a"}),
            NodeDefinition(id="b", type="Worker", config={"webhook_url": "http://workers.test/b"}),
        ],
        edges=[EdgeDefinition(id="e1", source="a", target="b")],
    )
    version = await engine.save_version("sqlite", definition)
    run_id = await engine.start_run(version.version_id, input={"n": 1})

    await engine.handle_callback(run_id, "a", {"status": "completed", "output": {"n": 2}})
    await engine.handle_callback(run_id, "b", {"status": "completed", "output": {"n": 3}})

    # A fresh store on the same file sees everything
    reopened = SQLiteRunStore(tmp_path / "engine.db")
    run = await reopened.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.node_states["b"].output == {"n": 3}
    assert run.node_states["b"].input == {"n": 2}
    assert dispatcher.node_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_set_run_status_with_expected(store):
    await store.create_run(_run())

    assert not await store.set_run_status("run_1", RunStatus.FAILED, expected=RunStatus.COMPLETED)
    assert (await store.get_run("run_1")).status == RunStatus.RUNNING

    assert await store.set_run_status(
        "run_1", RunStatus.WAITING_FOR_USER, expected=RunStatus.RUNNING
    )
    assert (await store.get_run("run_1")).status == RunStatus.WAITING_FOR_USER


@pytest.mark.asyncio
async def test_update_run_status_derives_from_current_states(store):
    await store.create_run(_run())
    await store.transition("run_1", "a", NodeStatus.RUNNING)
    seen = []

    def derive(node_states):
        seen.append({k: s.status for k, s in node_states.items()})
        if all(s.status == NodeStatus.COMPLETED for s in node_states.values()):
            return RunStatus.COMPLETED
        return RunStatus.RUNNING

    previous, status = await store.update_run_status("run_1", derive)
    assert (previous.status, status) == (RunStatus.RUNNING, RunStatus.RUNNING)

    await store.transition("run_1", "a", NodeStatus.COMPLETED)
    previous, status = await store.update_run_status("run_1", derive)
    assert (previous.status, status) == (RunStatus.RUNNING, RunStatus.COMPLETED)
    assert seen[-1] == {"a": NodeStatus.COMPLETED}

    loaded = await store.get_run("run_1")
    assert loaded.status == RunStatus.COMPLETED
    assert loaded.completed_at is not None

    previous, status = await store.update_run_status("run_1", derive)
    assert previous.status == status == RunStatus.COMPLETED

    with pytest.raises(RunNotFoundError):
        await store.update_run_status("run_missing", derive)
