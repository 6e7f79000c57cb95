"""Tests for the edgeflow command line."""

import json

import pytest

from edgeflow.cli import main

GRAPH = {
    "nodes": [
        {"id": "fetch", "type": "Worker", "worker_type": "http-fetch"},
        {"id": "ask", "type": "UserGate"},
    ],
    "edges": [{"id": "e1", "source": "fetch", "target": "ask"}],
}


@pytest.fixture
def workspace(tmp_path):
    config = tmp_path / "configuration.json"
    config.write_text(
        json.dumps(
            {
                "storage_path": str(tmp_path / "store"),
                "workers": {"http-fetch": "http://workers.test/fetch"},
            }
        )
    )
    graph = tmp_path / "graph.json"
    graph.write_text(json.dumps(GRAPH))
    return tmp_path, ["--config", str(config), "--log-level", "WARNING"]


def _json_output(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


def test_compile_valid_graph(workspace, capsys):
    tmp_path, args = workspace
    assert main([*args, "compile", str(tmp_path / "graph.json")]) == 0
    assert _json_output(capsys)["execution_graph"]["terminal_node_ids"] == ["ask"]


def test_compile_reports_issues(workspace, capsys):
    tmp_path, args = workspace
    broken = dict(GRAPH, nodes=[{"id": "fetch", "type": "Worker", "worker_type": "unknown"}])
    broken["edges"] = []
    path = tmp_path / "broken.json"
    path.write_text(json.dumps(broken))

    assert main([*args, "compile", str(path)]) == 1
    assert _json_output(capsys)["errors"][0]["kind"] == "unknown_worker_type"


def test_save_then_status(workspace, capsys):
    tmp_path, args = workspace
    assert main([*args, "save", "fetcher", str(tmp_path / "graph.json")]) == 0
    version_id = _json_output(capsys)["version_id"]
    assert version_id.startswith("fetcher_v")
    assert (tmp_path / "store" / "versions" / f"{version_id}.json").exists()

    assert main([*args, "status", "run_missing"]) == 1
    assert "Run not found" in capsys.readouterr().err


def test_reconcile_with_empty_store(workspace, capsys):
    _, args = workspace
    assert main([*args, "reconcile"]) == 0
    assert _json_output(capsys) == {"failed": [], "retried": []}
