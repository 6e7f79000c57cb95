"""
Execution Graph - The compiled, immutable runtime form of a graph.

Produced once per saved version by the compiler and never mutated. Every
Run created against that version reads the same adjacency, so the tables
are stored as read-only mappings all the way down; serialization turns
them back into plain JSON objects and arrays.

Lookups the edge-walker needs are all O(1):
- nodes:            id -> {type, worker_type, config, inputs}
- adjacency:        id -> downstream ids
- upstream:         id -> upstream ids (reverse of adjacency)
- edge_mappings:    "source->target" -> {target_field: source_path}
- entry/terminal:   precomputed at compile time
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator

from edgeflow.graph.definition import InputSpec


def edge_key(source: str, target: str) -> str:
    return f"{source}->{target}"


def freeze(value: Any) -> Any:
    """Read-only copy of a JSON-like value: mappings become proxies, lists tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, list | tuple):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Plain, mutable copy of a frozen value."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


class ExecutionNode(BaseModel):
    """A node with presentation fields stripped. ``id`` matches the definition exactly."""

    id: str
    type: str
    worker_type: str | None = None
    config: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    inputs: Mapping[str, InputSpec] = Field(default_factory=dict, validate_default=True)

    model_config = {"frozen": True}

    @field_validator("config", mode="after")
    @classmethod
    def _freeze_config(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze(value)

    @field_validator("inputs", mode="after")
    @classmethod
    def _freeze_inputs(cls, value: Mapping[str, InputSpec]) -> Mapping[str, InputSpec]:
        return MappingProxyType(dict(value))

    @field_serializer("config")
    def _serialize_config(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return thaw(value)

    @field_serializer("inputs")
    def _serialize_inputs(self, value: Mapping[str, InputSpec]) -> dict[str, InputSpec]:
        return dict(value)


class ExecutionGraph(BaseModel):
    """Immutable runtime graph."""

    nodes: Mapping[str, ExecutionNode]
    adjacency: Mapping[str, tuple[str, ...]]
    upstream: Mapping[str, tuple[str, ...]]
    edge_mappings: Mapping[str, Mapping[str, str]] = Field(
        default_factory=dict, validate_default=True
    )
    entry_node_ids: tuple[str, ...]
    terminal_node_ids: tuple[str, ...]

    model_config = {"frozen": True}

    @field_validator("nodes", "adjacency", "upstream", mode="after")
    @classmethod
    def _freeze_table(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(value))

    @field_validator("edge_mappings", mode="after")
    @classmethod
    def _freeze_mappings(cls, value: Mapping[str, Mapping[str, str]]) -> Mapping[str, Any]:
        return freeze(value)

    @field_serializer("nodes", "adjacency", "upstream")
    def _serialize_table(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)

    @field_serializer("edge_mappings")
    def _serialize_mappings(self, value: Mapping[str, Mapping[str, str]]) -> dict[str, Any]:
        return thaw(value)

    def get_node(self, node_id: str) -> ExecutionNode | None:
        return self.nodes.get(node_id)

    def downstream_of(self, node_id: str) -> tuple[str, ...]:
        return self.adjacency.get(node_id, ())

    def upstream_of(self, node_id: str) -> tuple[str, ...]:
        return self.upstream.get(node_id, ())

    def mapping_for(self, source: str, target: str) -> Mapping[str, str] | None:
        return self.edge_mappings.get(edge_key(source, target))

    def is_entry(self, node_id: str) -> bool:
        return node_id in self.entry_node_ids

    def is_terminal(self, node_id: str) -> bool:
        return node_id in self.terminal_node_ids
