"""
Type Registry - Which node types and worker types a deployment knows about.

The compiler rejects any node whose type is not registered here, and any
Worker node whose worker_type is not registered. The dispatcher uses the
registered endpoint for a worker type when the node itself does not carry
a webhook_url.
"""

from dataclasses import dataclass

from edgeflow.graph.definition import NodeKind


@dataclass(frozen=True)
class WorkerType:
    """An external worker service the engine can dispatch to."""

    name: str
    endpoint: str | None = None
    description: str = ""


class TypeRegistry:
    """
    Registry of node types and worker types.

    Example:
        registry = TypeRegistry()
        registry.register_worker_type(
            WorkerType(name="text-generation", endpoint="https://workers.example.com/text")
        )
        registry.has_node_type("Worker")  # True
    """

    def __init__(self, node_types: list[str] | None = None):
        self._node_types: set[str] = set(node_types) if node_types else {k.value for k in NodeKind}
        self._worker_types: dict[str, WorkerType] = {}

    def register_node_type(self, name: str) -> None:
        self._node_types.add(name)

    def register_worker_type(self, worker_type: WorkerType) -> None:
        self._worker_types[worker_type.name] = worker_type

    def has_node_type(self, name: str) -> bool:
        return name in self._node_types

    def has_worker_type(self, name: str) -> bool:
        return name in self._worker_types

    def get_worker_type(self, name: str) -> WorkerType | None:
        return self._worker_types.get(name)

    @property
    def node_types(self) -> list[str]:
        return sorted(self._node_types)

    @property
    def worker_types(self) -> list[str]:
        return sorted(self._worker_types)
