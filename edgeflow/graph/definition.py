"""
Graph Definition - The author-time graph handed to the compiler.

A definition is what the authoring layer saves: nodes, edges and whatever
presentation data the editor needs (positions, styles, labels, viewport).
The engine never executes a definition directly; it is compiled into an
ExecutionGraph first, which drops everything that only matters on screen.

Node types:
- Worker:    dispatches its input to an external service and waits for a callback
- Splitter:  fans an array out into one parallel instance per element
- Collector: fans parallel instances back in, ordered by original index
- UserGate:  waits for a person to supply the node's output
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NodeKind(StrEnum):
    """Built-in node variants understood by the engine."""

    WORKER = "Worker"
    SPLITTER = "Splitter"
    COLLECTOR = "Collector"
    USER_GATE = "UserGate"


class InputSpec(BaseModel):
    """Declared input field on a node."""

    required: bool = False
    default: Any | None = None
    description: str = ""

    model_config = {"extra": "allow"}

    @property
    def has_default(self) -> bool:
        return self.default is not None


class NodeDefinition(BaseModel):
    """
    Author-time node.

    Examples:
        NodeDefinition(
            id="summarize",
            type="Worker",
            worker_type="text-generation",
            config={"webhook_url": "https://workers.example.com/summarize"},
            inputs={"text": InputSpec(required=True)},
            position={"x": 120, "y": 40},  # presentation only, stripped on compile
        )
    """

    id: str
    type: str = Field(description="Node type name, resolved against the type registry")
    worker_type: str | None = Field(
        default=None, description="For Worker nodes: which external worker handles it"
    )
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, InputSpec] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class EdgeDefinition(BaseModel):
    """
    Author-time edge.

    ``mapping`` maps target input names to dotted paths into the source output:
    {"prompt": "result.text"} copies source_output["result"]["text"] into the
    target's "prompt" input.
    """

    id: str
    source: str
    target: str
    mapping: dict[str, str] | None = None

    model_config = {"extra": "allow"}


class GraphDefinition(BaseModel):
    """Complete author-time graph, including free-form layout data."""

    nodes: list[NodeDefinition] = Field(default_factory=list)
    edges: list[EdgeDefinition] = Field(default_factory=list)
    layout: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> NodeDefinition | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
