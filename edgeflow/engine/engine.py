"""
WorkflowEngine - the public face of the execution engine.

Wires the run store, the graph version store, the node handlers, the
edge-walker and the callback processor together, and exposes the inbound
operations the outside world calls:

    compile / save_version         authoring layer
    start_run                      webhooks, schedules, UI
    handle_callback                external workers
    complete_user_gate             people (via UI)
    retry_node / resume_run        operators, reconciler
    get_snapshot                   polling / visualization

Each operation sets the run's trace context, does its work, then
re-derives the run's overall status.
"""

import logging
import uuid
from typing import Any

from edgeflow.config import EngineConfig
from edgeflow.engine.callbacks import CallbackProcessor, CallbackResult
from edgeflow.engine.dispatch import HttpWorkerDispatcher, WorkerDispatcher
from edgeflow.engine.handlers import (
    CollectorHandler,
    NodeHandler,
    SplitterHandler,
    UserGateHandler,
    WorkerHandler,
)
from edgeflow.engine.status import final_outputs
from edgeflow.engine.walker import EdgeWalker
from edgeflow.errors import InvalidCallbackError, NodeStateConflictError
from edgeflow.graph.compiler import CompileResult, compile_graph
from edgeflow.graph.definition import GraphDefinition
from edgeflow.graph.execution_graph import ExecutionGraph
from edgeflow.graph.registry import TypeRegistry, WorkerType
from edgeflow.observability.logging import set_trace_context
from edgeflow.runtime.event_bus import EventBus, EventType, RunEvent
from edgeflow.schemas.run import (
    CallbackPayload,
    NodeState,
    NodeStatus,
    Run,
    RunSnapshot,
    RunStatus,
    TriggerMetadata,
    utcnow,
)
from edgeflow.storage.base import RunStore
from edgeflow.storage.graph_store import GraphVersion, GraphVersionStore

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    Edge-walking workflow engine.

    Example:
        engine = WorkflowEngine(
            store=InMemoryRunStore(),
            versions=GraphVersionStore(tmp_path),
            config=EngineConfig(base_url="https://engine.example.com"),
        )
        version = await engine.save_version("onboarding", definition)
        run_id = await engine.start_run(version.version_id, input={"email": "a@b.c"})
    """

    def __init__(
        self,
        store: RunStore,
        versions: GraphVersionStore,
        dispatcher: WorkerDispatcher | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config or EngineConfig()
        self.store = store
        self.versions = versions
        self.event_bus = event_bus or EventBus()
        self.dispatcher = dispatcher or HttpWorkerDispatcher(timeout=self.config.dispatch_timeout)

        for name, endpoint in self.config.workers.items():
            if not self.registry.has_worker_type(name):
                self.registry.register_worker_type(WorkerType(name=name, endpoint=endpoint))

        self.walker = EdgeWalker(
            store,
            handlers={
                h.kind: h
                for h in (
                    WorkerHandler(self.dispatcher, self.config.base_url, self.registry),
                    SplitterHandler(),
                    CollectorHandler(),
                    UserGateHandler(),
                )
            },
            event_bus=self.event_bus,
        )
        self.callbacks = CallbackProcessor(self.walker)

    @property
    def registry(self) -> TypeRegistry:
        return self.versions.registry

    def register_handler(self, handler: NodeHandler) -> None:
        """Add a handler for a custom node type (also registered with the compiler)."""
        self.registry.register_node_type(handler.kind)
        self.walker.register_handler(handler)

    # === AUTHORING ===

    def compile(self, definition: GraphDefinition) -> CompileResult:
        return compile_graph(definition, self.registry)

    async def save_version(self, flow_id: str, definition: GraphDefinition) -> GraphVersion:
        return await self.versions.save_version(flow_id, definition)

    # === RUNS ===

    def generate_run_id(self) -> str:
        """Format: ``run_YYYYMMDD_HHMMSS_{uuid8}``."""
        return f"run_{utcnow().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"

    async def _graph_for(self, run: Run) -> ExecutionGraph:
        return await self.versions.get_execution_graph(run.version_id)

    async def start_run(
        self,
        version_id: str,
        *,
        entity_id: str | None = None,
        trigger: TriggerMetadata | dict[str, Any] | None = None,
        input: dict[str, Any] | None = None,
    ) -> str:
        """
        Create a run against a saved version and fire its entry nodes.

        Returns as soon as entry nodes are fired; workers report back later.

        Raises:
            VersionNotFoundError: ``version_id`` was never saved
        """
        graph = await self.versions.get_execution_graph(version_id)
        if isinstance(trigger, dict):
            trigger = TriggerMetadata.model_validate(trigger)

        run = Run(
            id=self.generate_run_id(),
            version_id=version_id,
            entity_id=entity_id,
            trigger=trigger or TriggerMetadata(),
            input=input or {},
        )
        await self.store.create_run(run)
        set_trace_context(run_id=run.id, version_id=version_id)
        logger.info(
            f"Started run {run.id} on {version_id} "
            f"({len(graph.entry_node_ids)} entry node(s))",
            extra={"event": "run_started"},
        )
        await self.event_bus.emit_run_started(run.id, version_id, run.input)

        await self.walker.start(run.id, graph)
        await self.walker.refresh_run_status(run.id, graph)
        return run.id

    async def handle_callback(
        self, run_id: str, node_id: str, payload: CallbackPayload | dict[str, Any]
    ) -> CallbackResult:
        """Record a worker's ``completed``/``failed`` result and walk on."""
        if isinstance(payload, dict):
            try:
                payload = CallbackPayload.model_validate(payload)
            except ValueError as e:
                raise InvalidCallbackError(f"Invalid callback payload: {e}") from e

        run = await self.walker.load_run(run_id)
        set_trace_context(run_id=run_id, version_id=run.version_id)
        graph = await self._graph_for(run)
        result = await self.callbacks.handle_callback(run_id, graph, node_id, payload)
        if not result.duplicate:
            await self.walker.refresh_run_status(run_id, graph)
        return result

    async def complete_user_gate(self, run_id: str, node_id: str, output: Any) -> CallbackResult:
        run = await self.walker.load_run(run_id)
        set_trace_context(run_id=run_id, version_id=run.version_id)
        graph = await self._graph_for(run)
        result = await self.callbacks.complete_user_gate(run_id, graph, node_id, output)
        if not result.duplicate:
            await self.walker.refresh_run_status(run_id, graph)
        return result

    async def retry_node(self, run_id: str, node_id: str) -> NodeState:
        """
        Re-fire a failed node (``failed -> running``).

        Workers are re-dispatched with the input they were first fired with.

        Raises:
            NodeStateConflictError: the node is not failed
        """
        run = await self.walker.load_run(run_id)
        set_trace_context(run_id=run_id, version_id=run.version_id)
        graph = await self._graph_for(run)
        status = run.status_of(node_id)
        if status != NodeStatus.FAILED:
            raise NodeStateConflictError(node_id, status, NodeStatus.FAILED)

        logger.info(f"Retrying {node_id}", extra={"event": "node_retry"})
        await self.event_bus.publish(
            RunEvent(type=EventType.NODE_RETRY, run_id=run_id, node_id=node_id)
        )
        await self.walker.fire_node(run_id, graph, node_id, retry=True)
        await self.walker.refresh_run_status(run_id, graph)
        return await self.store.get_node_state(run_id, node_id) or NodeState()

    async def fail_node(self, run_id: str, node_id: str, error: str) -> NodeState | None:
        """
        Mark a running node failed and walk the failure.

        Returns None if the node was no longer running.
        """
        run = await self.walker.load_run(run_id)
        set_trace_context(run_id=run_id, version_id=run.version_id)
        graph = await self._graph_for(run)
        state = await self.store.transition(
            run_id, node_id, NodeStatus.FAILED, expected=[NodeStatus.RUNNING], error=error
        )
        if state is None:
            return None
        await self.event_bus.emit_node_status_changed(run_id, node_id, state.status, error=error)
        await self.walker.walk_edges(run_id, graph, node_id)
        await self.walker.refresh_run_status(run_id, graph)
        return state

    async def resume_run(self, run_id: str) -> RunSnapshot:
        """
        Pick a run back up from storage alone.

        Fires entry nodes that were never fired and re-walks every completed
        or failed node. Anything already claimed is skipped, so resuming a
        healthy run is a no-op.
        """
        run = await self.walker.load_run(run_id)
        set_trace_context(run_id=run_id, version_id=run.version_id)
        graph = await self._graph_for(run)
        logger.info(f"Resuming run {run_id}", extra={"event": "run_resumed"})
        await self.event_bus.publish(
            RunEvent(type=EventType.RUN_RESUMED, run_id=run_id, version_id=run.version_id)
        )

        for entry in graph.entry_node_ids:
            if run.status_of(entry) == NodeStatus.PENDING:
                await self.walker.fire_logical(run_id, graph, entry)
        for key, state in run.node_states.items():
            if state.status in (NodeStatus.COMPLETED, NodeStatus.FAILED):
                await self.walker.walk_edges(run_id, graph, key)

        await self.walker.refresh_run_status(run_id, graph)
        return await self.get_snapshot(run_id)

    # === READS ===

    async def get_run(self, run_id: str) -> Run:
        return await self.walker.load_run(run_id)

    async def get_snapshot(self, run_id: str) -> RunSnapshot:
        run = await self.walker.load_run(run_id)
        graph = await self._graph_for(run)
        return RunSnapshot(
            run_id=run.id,
            version_id=run.version_id,
            status=run.status,
            node_states=run.node_states,
            final_outputs=final_outputs(graph, run.node_states),
        )

    async def list_active_runs(self) -> list[Run]:
        runs = await self.store.list_runs()
        return [
            r for r in runs if r.status in (RunStatus.RUNNING, RunStatus.WAITING_FOR_USER)
        ]

    async def close(self) -> None:
        await self.dispatcher.close()
        await self.store.close()
