"""
Node handlers - one variant per node type, one polymorphic ``fire`` entry point.

A handler claims its node with a compare-and-set transition before doing
anything observable. Whoever loses the claim returns SKIPPED, which is what
makes the edge-walker safe to invoke repeatedly and concurrently for the
same node.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from edgeflow.graph.execution_graph import ExecutionGraph, ExecutionNode
from edgeflow.runtime.event_bus import EventBus
from edgeflow.schemas.run import NodeState, NodeStatus, Run
from edgeflow.storage.base import RunStore


class FireOutcome(StrEnum):
    """What happened when a node was fired."""

    DISPATCHED = "dispatched"  # Handed to an external worker; a callback will follow
    WAITING = "waiting"  # Parked until a person or another branch acts
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Not claimable: another walker got there first


@dataclass
class FireContext:
    """Everything a handler needs to fire one node (or one parallel instance)."""

    run: Run
    graph: ExecutionGraph
    node: ExecutionNode
    node_key: str  # Node id, or "{node_id}_{index}" for a parallel instance
    input: dict[str, Any]
    store: RunStore
    events: EventBus | None = None
    retry: bool = False

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def claimable(self) -> tuple[NodeStatus, ...]:
        """Statuses this firing may claim the node from."""
        return (NodeStatus.FAILED,) if self.retry else (NodeStatus.PENDING,)

    async def transition(
        self,
        to_status: NodeStatus,
        *,
        expected: tuple[NodeStatus, ...] | list[NodeStatus] | None = None,
        node_key: str | None = None,
        **fields: Any,
    ) -> NodeState | None:
        """Guarded transition of this node, published on the event bus when it lands."""
        key = node_key or self.node_key
        state = await self.store.transition(
            self.run_id, key, to_status, expected=expected, **fields
        )
        if state is not None and self.events is not None:
            await self.events.emit_node_status_changed(
                self.run_id, key, state.status, output=state.output, error=state.error
            )
        return state


class NodeHandler(ABC):
    """Base class for node-type variants."""

    kind: str
    # When False, the walker fires this node after every upstream event
    # instead of waiting for all upstreams to complete.
    gates_on_upstream: bool = True

    @abstractmethod
    async def fire(self, ctx: FireContext) -> FireOutcome: ...
