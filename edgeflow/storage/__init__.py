"""Run stores and the immutable graph version store."""

from edgeflow.storage.base import NodeWrite, RunStore, StaleNode
from edgeflow.storage.graph_store import GraphVersion, GraphVersionStore
from edgeflow.storage.memory import InMemoryRunStore
from edgeflow.storage.sqlite import SQLiteRunStore

__all__ = [
    "GraphVersion",
    "GraphVersionStore",
    "InMemoryRunStore",
    "NodeWrite",
    "RunStore",
    "SQLiteRunStore",
    "StaleNode",
]
