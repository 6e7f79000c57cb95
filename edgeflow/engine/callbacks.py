"""
Inbound completions: worker callbacks and user-gate completions.

A callback is just another completion event. It goes through the same
pipeline as everything else: validate the transition, persist it with
compare-and-set, then walk edges once.

Delivery may be duplicated. A callback whose status the node already has
is acknowledged as a duplicate and changes nothing, so edges are never
walked twice for the same completion.
"""

import logging
from dataclasses import dataclass
from typing import Any

from edgeflow.engine.handlers.worker import merge_pass_through
from edgeflow.engine.parallel import logical_node_id
from edgeflow.engine.walker import EdgeWalker
from edgeflow.errors import InvalidCallbackError, NodeNotFoundError, NodeStateConflictError
from edgeflow.graph.definition import NodeKind
from edgeflow.graph.execution_graph import ExecutionGraph, ExecutionNode
from edgeflow.runtime.event_bus import EventType, RunEvent
from edgeflow.schemas.run import CallbackPayload, NodeState, NodeStatus

logger = logging.getLogger(__name__)


@dataclass
class CallbackResult:
    run_id: str
    node_id: str
    status: NodeStatus
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "node_id": self.node_id,
            "status": self.status.value,
            "duplicate": self.duplicate,
        }


class CallbackProcessor:
    def __init__(self, walker: EdgeWalker):
        self.walker = walker
        self.store = walker.store

    def _resolve_node(self, run_id: str, graph: ExecutionGraph, node_key: str) -> ExecutionNode:
        node = graph.get_node(logical_node_id(node_key, graph))
        if node is None:
            raise NodeNotFoundError(run_id, node_key)
        return node

    async def _current(self, run_id: str, node_key: str) -> NodeState:
        return await self.store.get_node_state(run_id, node_key) or NodeState()

    async def handle_callback(
        self,
        run_id: str,
        graph: ExecutionGraph,
        node_key: str,
        payload: CallbackPayload,
    ) -> CallbackResult:
        """
        Record a worker's result and continue propagation.

        Raises:
            NodeNotFoundError: ``node_key`` is not part of the graph
            NodeStateConflictError: the node is not running
        """
        node = self._resolve_node(run_id, graph, node_key)
        current = await self._current(run_id, node_key)

        if current.status == payload.status:
            logger.info(
                f"Duplicate {payload.status} callback for {node_key} ignored",
                extra={"event": "callback_duplicate", "node_id": node_key},
            )
            return CallbackResult(run_id, node_key, current.status, duplicate=True)
        if current.status != NodeStatus.RUNNING:
            raise NodeStateConflictError(node_key, current.status, NodeStatus.RUNNING)

        if payload.status == NodeStatus.COMPLETED:
            fields: dict[str, Any] = {
                "output": merge_pass_through(node, current.input, payload.output)
            }
        else:
            fields = {"error": payload.error or "Worker reported failure"}

        state = await self.store.transition(
            run_id, node_key, payload.status, expected=[NodeStatus.RUNNING], **fields
        )
        if state is None:
            # Lost a race with another delivery of the same (or a conflicting) result
            latest = await self._current(run_id, node_key)
            if latest.status == payload.status:
                return CallbackResult(run_id, node_key, latest.status, duplicate=True)
            raise NodeStateConflictError(node_key, latest.status, NodeStatus.RUNNING)

        logger.info(
            f"Callback recorded {node_key} as {state.status}",
            extra={"event": "callback_received", "node_id": node_key},
        )
        await self._publish(run_id, node_key, state)
        await self.walker.walk_edges(run_id, graph, node_key)
        return CallbackResult(run_id, node_key, state.status)

    async def complete_user_gate(
        self, run_id: str, graph: ExecutionGraph, node_key: str, output: Any
    ) -> CallbackResult:
        """
        Record a person's answer for a UserGate: waiting_for_user -> running -> completed.

        Raises:
            InvalidCallbackError: the node is not a UserGate
            NodeStateConflictError: the node is not waiting for user input
        """
        node = self._resolve_node(run_id, graph, node_key)
        if node.type != NodeKind.USER_GATE:
            raise InvalidCallbackError(f"Node '{node_key}' is a {node.type}, not a UserGate")

        current = await self._current(run_id, node_key)
        if current.status == NodeStatus.COMPLETED:
            return CallbackResult(run_id, node_key, current.status, duplicate=True)
        if current.status != NodeStatus.WAITING_FOR_USER:
            raise NodeStateConflictError(node_key, current.status, NodeStatus.WAITING_FOR_USER)

        resumed = await self.store.transition(
            run_id, node_key, NodeStatus.RUNNING, expected=[NodeStatus.WAITING_FOR_USER]
        )
        if resumed is None:
            latest = await self._current(run_id, node_key)
            if latest.status == NodeStatus.COMPLETED:
                return CallbackResult(run_id, node_key, latest.status, duplicate=True)
            raise NodeStateConflictError(node_key, latest.status, NodeStatus.WAITING_FOR_USER)

        state = await self.store.transition(
            run_id, node_key, NodeStatus.COMPLETED, expected=[NodeStatus.RUNNING], output=output
        )
        if state is None:
            latest = await self._current(run_id, node_key)
            raise NodeStateConflictError(node_key, latest.status, NodeStatus.RUNNING)

        logger.info(
            f"User completed {node_key}",
            extra={"event": "user_gate_completed", "node_id": node_key},
        )
        await self._publish(run_id, node_key, state)
        await self.walker.walk_edges(run_id, graph, node_key)
        return CallbackResult(run_id, node_key, state.status)

    async def _publish(self, run_id: str, node_key: str, state: NodeState) -> None:
        bus = self.walker.event_bus
        if bus is None:
            return
        await bus.publish(
            RunEvent(
                type=EventType.CALLBACK_RECEIVED,
                run_id=run_id,
                node_id=node_key,
                data={"status": state.status.value},
            )
        )
        await bus.emit_node_status_changed(
            run_id, node_key, state.status, output=state.output, error=state.error
        )
