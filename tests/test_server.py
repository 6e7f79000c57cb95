"""Tests for the engine HTTP server."""

import aiohttp
import pytest

from edgeflow.runtime.server import EngineServer, ServerConfig

GRAPH = {
    "nodes": [
        {
            "id": "draft",
            "type": "Worker",
            "config": {"webhook_url": "http://workers.test/draft"},
            "position": {"x": 0, "y": 0},
        },
        {"id": "approve", "type": "UserGate"},
    ],
    "edges": [{"id": "e1", "source": "draft", "target": "approve"}],
    "layout": {"zoom": 1},
}

CYCLIC = {
    "nodes": [{"id": "a", "type": "Worker"}, {"id": "b", "type": "Worker"}],
    "edges": [
        {"id": "e1", "source": "a", "target": "b"},
        {"id": "e2", "source": "b", "target": "a"},
    ],
}


@pytest.fixture
async def server(engine):
    server = EngineServer(engine, ServerConfig(host="127.0.0.1", port=0))
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def client(server):
    async with aiohttp.ClientSession(base_url=f"http://127.0.0.1:{server.port}") as session:
        yield session


async def _start_run(client) -> str:
    async with client.post("/flows/review/versions", json=GRAPH) as resp:
        assert resp.status == 201
        version_id = (await resp.json())["version_id"]
    async with client.post(f"/versions/{version_id}/runs", json={"input": {"doc": 1}}) as resp:
        assert resp.status == 201
        return (await resp.json())["run_id"]


@pytest.mark.asyncio
async def test_server_lifecycle(engine):
    server = EngineServer(engine, ServerConfig(port=0))
    assert not server.is_running
    await server.start()
    assert server.is_running
    assert server.port > 0
    await server.stop()
    assert not server.is_running
    assert server.port is None


@pytest.mark.asyncio
async def test_compile_endpoint(client):
    async with client.post("/graphs/compile", json=GRAPH) as resp:
        assert resp.status == 200
        body = await resp.json()
    assert body["execution_graph"]["entry_node_ids"] == ["draft"]
    assert "position" not in body["execution_graph"]["nodes"]["draft"]

    async with client.post("/graphs/compile", json=CYCLIC) as resp:
        assert resp.status == 422
        body = await resp.json()
    assert {e["kind"] for e in body["errors"]} == {"cycle", "orphan"}


@pytest.mark.asyncio
async def test_saving_invalid_graph_returns_422(client):
    async with client.post("/flows/broken/versions", json=CYCLIC) as resp:
        assert resp.status == 422
        body = await resp.json()
    assert any(e["kind"] == "cycle" for e in body["errors"])


@pytest.mark.asyncio
async def test_full_run_over_http(client, dispatcher):
    run_id = await _start_run(client)
    request = dispatcher.request_for("draft")
    assert request.input == {"doc": 1}

    async with client.post(
        f"/callback/{run_id}/draft", json={"status": "completed", "output": {"text": "v1"}}
    ) as resp:
        assert resp.status == 200
        assert await resp.json() == {
            "run_id": run_id,
            "node_id": "draft",
            "status": "completed",
            "duplicate": False,
        }

    async with client.get(f"/runs/{run_id}") as resp:
        snapshot = await resp.json()
    assert snapshot["status"] == "waiting_for_user"
    assert snapshot["node_states"]["approve"]["status"] == "waiting_for_user"

    async with client.post(f"/complete/{run_id}/approve", json={"output": "yes"}) as resp:
        assert resp.status == 200

    async with client.get(f"/runs/{run_id}") as resp:
        snapshot = await resp.json()
    assert snapshot["status"] == "completed"
    assert snapshot["final_outputs"] == {"approve": "yes"}


@pytest.mark.asyncio
async def test_duplicate_and_conflicting_callbacks(client):
    run_id = await _start_run(client)
    done = {"status": "completed", "output": {}}
    async with client.post(f"/callback/{run_id}/draft", json=done) as resp:
        assert resp.status == 200
    async with client.post(f"/callback/{run_id}/draft", json=done) as resp:
        assert resp.status == 200
        assert (await resp.json())["duplicate"] is True
    async with client.post(f"/callback/{run_id}/draft", json={"status": "failed"}) as resp:
        assert resp.status == 409
        assert (await resp.json())["status"] == "completed"


@pytest.mark.asyncio
async def test_bad_requests(client):
    run_id = await _start_run(client)

    async with client.post(f"/callback/{run_id}/draft", json={"status": "running"}) as resp:
        assert resp.status == 400
    async with client.post(f"/callback/{run_id}/draft", data=b"{not json") as resp:
        assert resp.status == 400
    async with client.post(f"/callback/{run_id}/ghost", json={"status": "completed"}) as resp:
        assert resp.status == 404
    async with client.get("/runs/run_missing") as resp:
        assert resp.status == 404
    async with client.post("/versions/nope_v1/runs", json={}) as resp:
        assert resp.status == 404


@pytest.mark.asyncio
async def test_retry_and_resume_endpoints(client, dispatcher):
    run_id = await _start_run(client)
    async with client.post(f"/retry/{run_id}/draft") as resp:
        assert resp.status == 409

    async with client.post(f"/callback/{run_id}/draft", json={"status": "failed"}) as resp:
        assert resp.status == 200
    async with client.post(f"/retry/{run_id}/draft") as resp:
        assert resp.status == 200
        body = await resp.json()
    assert body["node_id"] == "draft"
    assert body["status"] == "running"
    assert body["attempts"] == 2
    assert dispatcher.node_ids == ["draft", "draft"]

    async with client.post(f"/runs/{run_id}/resume") as resp:
        assert resp.status == 200
        assert (await resp.json())["status"] == "running"
