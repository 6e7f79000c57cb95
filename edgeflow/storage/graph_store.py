"""
Graph Version Store - Immutable, compiled graph versions.

Saving a flow compiles it first; an invalid graph is never written. Each
save produces a new version id, and a version file is never rewritten, so
every Run created against a version observes the same adjacency.

    {base_path}/versions/{version_id}.json
        {"version_id", "flow_id", "created_at", "definition", "execution_graph"}
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from edgeflow.errors import VersionNotFoundError
from edgeflow.graph.compiler import compile_or_raise
from edgeflow.graph.definition import GraphDefinition
from edgeflow.graph.execution_graph import ExecutionGraph
from edgeflow.graph.registry import TypeRegistry
from edgeflow.schemas.run import utcnow
from edgeflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class GraphVersion(BaseModel):
    """A saved flow version: the author-time definition and its compiled form."""

    version_id: str
    flow_id: str
    created_at: datetime = Field(default_factory=utcnow)
    definition: GraphDefinition
    execution_graph: ExecutionGraph


class GraphVersionStore:
    """
    File-backed store of immutable graph versions.

    Compiled graphs are cached in memory after first load. They are
    immutable, so the cache can never go stale.
    """

    def __init__(self, base_path: Path, registry: TypeRegistry | None = None):
        self.base_path = Path(base_path)
        self.versions_dir = self.base_path / "versions"
        self.registry = registry or TypeRegistry()
        self._cache: dict[str, GraphVersion] = {}

    def generate_version_id(self, flow_id: str) -> str:
        """Format: ``{flow_id}_v{YYYYMMDDHHMMSS}_{uuid8}``."""
        timestamp = utcnow().strftime("%Y%m%d%H%M%S")
        return f"{flow_id}_v{timestamp}_{uuid.uuid4().hex[:8]}"

    def get_version_path(self, version_id: str) -> Path:
        return self.versions_dir / f"{version_id}.json"

    async def save_version(self, flow_id: str, definition: GraphDefinition) -> GraphVersion:
        """
        Compile and persist a new version.

        Raises:
            CompilationError: The definition does not compile; nothing is written.
        """
        graph = compile_or_raise(definition, self.registry)
        version = GraphVersion(
            version_id=self.generate_version_id(flow_id),
            flow_id=flow_id,
            definition=definition,
            execution_graph=graph,
        )

        def _write():
            path = self.get_version_path(version.version_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists():
                raise FileExistsError(f"Graph version already exists: {version.version_id}")
            with atomic_write(path) as f:
                f.write(version.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        self._cache[version.version_id] = version
        logger.info(
            f"Saved graph version {version.version_id} for flow {flow_id} "
            f"({len(graph.nodes)} nodes)",
            extra={"event": "version_saved"},
        )
        return version

    async def get_version(self, version_id: str) -> GraphVersion:
        cached = self._cache.get(version_id)
        if cached is not None:
            return cached

        def _read():
            path = self.get_version_path(version_id)
            if not path.exists():
                return None
            return GraphVersion.model_validate_json(path.read_text(encoding="utf-8"))

        version = await asyncio.to_thread(_read)
        if version is None:
            raise VersionNotFoundError(version_id)
        self._cache[version_id] = version
        return version

    async def get_execution_graph(self, version_id: str) -> ExecutionGraph:
        return (await self.get_version(version_id)).execution_graph

    async def list_versions(self, flow_id: str | None = None) -> list[str]:
        """Version ids, oldest first, optionally restricted to one flow."""

        def _scan():
            if not self.versions_dir.exists():
                return []
            entries = []
            for path in self.versions_dir.glob("*.json"):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                except (json.JSONDecodeError, OSError) as e:
                    logger.warning(f"Skipping unreadable version file {path}: {e}")
                    continue
                if flow_id is None or data.get("flow_id") == flow_id:
                    entries.append((data.get("created_at", ""), data["version_id"]))
            return [version_id for _, version_id in sorted(entries)]

        return await asyncio.to_thread(_scan)
