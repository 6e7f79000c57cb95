"""
Edge-Walker - event-driven propagation along graph edges.

There is no scheduler loop. Every time a node completes or fails, its
completion is walked exactly once:

    1. recover the logical node id (strip a parallel-instance suffix)
    2. stop if it is a terminal node
    3. for each downstream node, fire it if all of its upstreams are
       completed (Collectors are fired unconditionally and do their own
       counting)

Walking the same completion twice, or two completions concurrently, is
safe: every handler claims its node by compare-and-set, so a node fires at
most once per attempt. A node whose upstream is a Splitter fires as all of
its parallel instances at once.
"""

import asyncio
import logging

from edgeflow.engine.handlers.base import FireContext, FireOutcome, NodeHandler
from edgeflow.engine.inputs import build_input
from edgeflow.engine.parallel import (
    instance_keys_for,
    is_parallel_branch,
    logical_node_id,
    logical_status,
    splitter_upstream,
)
from edgeflow.engine.status import derive_run_status, final_outputs
from edgeflow.errors import EdgeflowError, NodeNotFoundError, RunNotFoundError
from edgeflow.graph.execution_graph import ExecutionGraph, ExecutionNode
from edgeflow.observability.logging import get_trace_context, set_trace_context, trace_context
from edgeflow.runtime.event_bus import EventBus, EventType, RunEvent
from edgeflow.schemas.run import NodeStatus, Run, RunStatus
from edgeflow.storage.base import RunStore

logger = logging.getLogger(__name__)


class EdgeWalker:
    """
    Fires nodes and walks completions for runs of a compiled graph.

    Holds no run state of its own; every decision is made from a fresh read
    of the run store.
    """

    def __init__(
        self,
        store: RunStore,
        handlers: dict[str, NodeHandler],
        event_bus: EventBus | None = None,
    ):
        self.store = store
        self.handlers = dict(handlers)
        self.event_bus = event_bus

    def register_handler(self, handler: NodeHandler) -> None:
        self.handlers[handler.kind] = handler

    def handler_for(self, node: ExecutionNode) -> NodeHandler:
        handler = self.handlers.get(node.type)
        if handler is None:
            raise EdgeflowError(f"No handler registered for node type '{node.type}'")
        return handler

    async def load_run(self, run_id: str) -> Run:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # === FIRING ===

    async def start(self, run_id: str, graph: ExecutionGraph) -> None:
        """Fire every entry node. There is no dependency to satisfy."""
        await asyncio.gather(*(self.fire_logical(run_id, graph, n) for n in graph.entry_node_ids))

    async def fire_logical(
        self, run_id: str, graph: ExecutionGraph, node_id: str, retry: bool = False
    ) -> None:
        """Fire a logical node: once, or once per parallel instance."""
        if not is_parallel_branch(graph, node_id):
            await self.fire_node(run_id, graph, node_id, retry=retry)
            return

        run = await self.load_run(run_id)
        keys = instance_keys_for(node_id, run.node_states, graph)
        if not keys:
            if run.status_of(splitter_upstream(graph, node_id)) == NodeStatus.COMPLETED:
                # Empty fan-out: nothing to run, let the Collector close over zero instances
                logger.info(
                    f"No parallel instances for {node_id}; walking past it",
                    extra={"event": "empty_fan_out"},
                )
                await self.walk_edges(run_id, graph, node_id)
            return

        await asyncio.gather(*(self.fire_node(run_id, graph, key, retry=retry) for key in keys))

    async def fire_node(
        self, run_id: str, graph: ExecutionGraph, node_key: str, retry: bool = False
    ) -> FireOutcome:
        """
        Fire one node or parallel instance, then walk it if it finished synchronously.

        Args:
            node_key: Node id or parallel instance key
            retry: Claim from ``failed`` instead of ``pending``
        """
        node_id = logical_node_id(node_key, graph)
        node = graph.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(run_id, node_key)
        handler = self.handler_for(node)

        run = await self.load_run(run_id)
        state = run.state_of(node_key)
        if retry and state is not None and state.input is not None:
            node_input = state.input
        else:
            node_input = build_input(graph, run, node_key, node_id)

        previous = get_trace_context()
        set_trace_context(node_id=node_key)
        try:
            ctx = FireContext(
                run=run,
                graph=graph,
                node=node,
                node_key=node_key,
                input=node_input,
                store=self.store,
                events=self.event_bus,
                retry=retry,
            )
            outcome = await handler.fire(ctx)
            logger.info(
                f"Fired {node.type} {node_key}: {outcome}",
                extra={"event": "node_fired", "status": str(outcome)},
            )
        finally:
            trace_context.set(previous)

        if outcome in (FireOutcome.COMPLETED, FireOutcome.FAILED):
            await self.walk_edges(run_id, graph, node_key)
        return outcome

    # === WALKING ===

    def upstream_completed(self, graph: ExecutionGraph, run: Run, node_id: str) -> bool:
        """True when every upstream logical node of ``node_id`` is completed."""
        return all(
            logical_status(upstream_id, run.node_states, graph) == NodeStatus.COMPLETED
            for upstream_id in graph.upstream_of(node_id)
        )

    async def walk_edges(self, run_id: str, graph: ExecutionGraph, completed_key: str) -> None:
        """Propagate a recorded completion or failure of ``completed_key``."""
        node_id = logical_node_id(completed_key, graph)
        if graph.is_terminal(node_id):
            logger.debug(f"{completed_key} is terminal; nothing to walk")
            return

        run = await self.load_run(run_id)
        ready = []
        for candidate in graph.downstream_of(node_id):
            handler = self.handler_for(graph.nodes[candidate])
            if handler.gates_on_upstream and not self.upstream_completed(graph, run, candidate):
                continue
            ready.append(candidate)

        logger.debug(
            f"Walked {completed_key}: firing {ready or 'nothing'}",
            extra={"event": "edge_walk"},
        )
        await asyncio.gather(*(self.fire_logical(run_id, graph, c) for c in ready))

    # === RUN STATUS ===

    async def refresh_run_status(self, run_id: str, graph: ExecutionGraph) -> RunStatus:
        """
        Re-derive the run's overall status and persist it if it changed.

        The store derives and writes in one atomic step, so of several
        concurrent refreshes only the one that actually moves the status
        publishes the change.
        """
        run, status = await self.store.update_run_status(
            run_id, lambda node_states: derive_run_status(graph, node_states)
        )
        if status == run.status:
            return status

        finished = status in (RunStatus.COMPLETED, RunStatus.FAILED)
        logger.info(
            f"Run status {run.status} -> {status}",
            extra={"event": "run_status_changed", "status": str(status)},
        )
        if self.event_bus is None:
            return status
        if finished:
            await self.event_bus.emit_run_finished(
                run_id, run.version_id, status, final_outputs(graph, run.node_states)
            )
        else:
            await self.event_bus.publish(
                RunEvent(
                    type=EventType.RUN_STATUS_CHANGED,
                    run_id=run_id,
                    version_id=run.version_id,
                    data={"from": str(run.status), "to": str(status)},
                )
            )
        return status
