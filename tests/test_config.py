"""Tests for configuration loading."""

import json
from pathlib import Path

from edgeflow.config import EngineConfig, get_edgeflow_config


def _write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "configuration.json"
    path.write_text(json.dumps(data))
    return path


def test_defaults_when_file_missing(tmp_path):
    config = EngineConfig.load(tmp_path / "absent.json", env={})

    assert config.base_url is None
    assert config.dispatch_timeout == 30.0
    assert config.stale_after_seconds == 900.0
    assert config.auto_retry_stale is False
    assert config.max_stale_retries == 1
    assert config.port == 8080
    assert config.workers == {}


def test_values_from_file(tmp_path):
    path = _write_config(
        tmp_path,
        {
            "base_url": "https://engine.example.com",
            "storage_path": str(tmp_path / "data"),
            "dispatch_timeout": 5,
            "stale_after_seconds": 60,
            "auto_retry_stale": True,
            "max_stale_retries": 2,
            "server": {"host": "0.0.0.0", "port": 9000},
            "workers": {"text-generation": "https://workers.example.com/text"},
        },
    )
    config = EngineConfig.load(path, env={})

    assert config.base_url == "https://engine.example.com"
    assert config.storage_path == tmp_path / "data"
    assert config.runs_db_path == tmp_path / "data" / "runs.db"
    assert config.dispatch_timeout == 5.0
    assert config.stale_after_seconds == 60.0
    assert config.auto_retry_stale is True
    assert config.max_stale_retries == 2
    assert (config.host, config.port) == ("0.0.0.0", 9000)
    assert config.workers == {"text-generation": "https://workers.example.com/text"}


def test_environment_overrides_file(tmp_path):
    path = _write_config(tmp_path, {"base_url": "https://file.example.com", "server": {}})
    env = {
        "EDGEFLOW_BASE_URL": "https://env.example.com",
        "EDGEFLOW_STORAGE_PATH": str(tmp_path / "env"),
        "EDGEFLOW_AUTO_RETRY_STALE": "yes",
        "EDGEFLOW_MAX_STALE_RETRIES": "4",
        "EDGEFLOW_PORT": "7000",
    }
    config = EngineConfig.load(path, env=env)

    assert config.base_url == "https://env.example.com"
    assert config.storage_path == tmp_path / "env"
    assert config.auto_retry_stale is True
    assert config.max_stale_retries == 4
    assert config.port == 7000


def test_unreadable_file_is_ignored(tmp_path):
    path = tmp_path / "configuration.json"
    path.write_text("{not json")
    assert get_edgeflow_config(path) == {}
