"""Shared edgeflow configuration.

Reads ~/.edgeflow/configuration.json, then lets EDGEFLOW_* environment
variables override individual settings:

    {
      "base_url": "https://engine.example.com",
      "storage_path": "~/.edgeflow",
      "dispatch_timeout": 30,
      "stale_after_seconds": 900,
      "auto_retry_stale": false,
      "max_stale_retries": 1,
      "server": {"host": "127.0.0.1", "port": 8080},
      "workers": {"text-generation": "https://workers.example.com/text"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

EDGEFLOW_CONFIG_FILE = Path.home() / ".edgeflow" / "configuration.json"


def get_edgeflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration JSON; a missing or unreadable file means defaults."""
    config_file = path or EDGEFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine, storage and server settings."""

    base_url: str | None = None  # Public URL workers call back to
    storage_path: Path = field(default_factory=lambda: Path.home() / ".edgeflow")
    dispatch_timeout: float = 30.0
    stale_after_seconds: float = 900.0
    auto_retry_stale: bool = False
    max_stale_retries: int = 1
    host: str = "127.0.0.1"
    port: int = 8080
    workers: dict[str, str] = field(default_factory=dict)  # worker_type -> endpoint

    @property
    def runs_db_path(self) -> Path:
        return self.storage_path / "runs.db"

    @classmethod
    def load(cls, path: Path | None = None, env: dict[str, str] | None = None) -> "EngineConfig":
        """Build from the config file, then apply environment overrides."""
        data = get_edgeflow_config(path)
        env = os.environ if env is None else env
        server = data.get("server", {})

        config = cls(
            base_url=data.get("base_url"),
            dispatch_timeout=float(data.get("dispatch_timeout", 30.0)),
            stale_after_seconds=float(data.get("stale_after_seconds", 900.0)),
            auto_retry_stale=bool(data.get("auto_retry_stale", False)),
            max_stale_retries=int(data.get("max_stale_retries", 1)),
            host=server.get("host", "127.0.0.1"),
            port=int(server.get("port", 8080)),
            workers=dict(data.get("workers", {})),
        )
        if data.get("storage_path"):
            config.storage_path = Path(data["storage_path"]).expanduser()

        if env.get("EDGEFLOW_BASE_URL"):
            config.base_url = env["EDGEFLOW_BASE_URL"]
        if env.get("EDGEFLOW_STORAGE_PATH"):
            config.storage_path = Path(env["EDGEFLOW_STORAGE_PATH"]).expanduser()
        if env.get("EDGEFLOW_DISPATCH_TIMEOUT"):
            config.dispatch_timeout = float(env["EDGEFLOW_DISPATCH_TIMEOUT"])
        if env.get("EDGEFLOW_STALE_AFTER_SECONDS"):
            config.stale_after_seconds = float(env["EDGEFLOW_STALE_AFTER_SECONDS"])
        if env.get("EDGEFLOW_AUTO_RETRY_STALE"):
            config.auto_retry_stale = _env_bool(env["EDGEFLOW_AUTO_RETRY_STALE"])
        if env.get("EDGEFLOW_MAX_STALE_RETRIES"):
            config.max_stale_retries = int(env["EDGEFLOW_MAX_STALE_RETRIES"])
        if env.get("EDGEFLOW_HOST"):
            config.host = env["EDGEFLOW_HOST"]
        if env.get("EDGEFLOW_PORT"):
            config.port = int(env["EDGEFLOW_PORT"])

        return config
