"""
Worker - dispatch to an external service and return immediately.

    claim (pending -> running, or failed -> running on retry)
    build callback URL for (run_id, node_key)
    POST {run_id, node_id, config, input, callback_url} to the worker
    return DISPATCHED

No coroutine waits for the worker. Its result arrives later as a callback,
handled by the same transition-then-walk path as any other completion.
"""

import logging
from typing import Any

from edgeflow.engine.dispatch import WorkerDispatcher, build_callback_url
from edgeflow.engine.handlers.base import FireContext, FireOutcome, NodeHandler
from edgeflow.errors import WorkerExecutionError
from edgeflow.graph.definition import NodeKind
from edgeflow.graph.execution_graph import ExecutionNode, thaw
from edgeflow.graph.registry import TypeRegistry
from edgeflow.schemas.run import NodeStatus, WorkerDispatchRequest

logger = logging.getLogger(__name__)


def merge_pass_through(node: ExecutionNode, node_input: Any, output: Any) -> Any:
    """
    Combine a worker's output with its input when the node asks for it.

    Only applies when ``config.pass_through_input`` is true and both sides
    are keyed records; worker output wins on key collisions.
    """
    if not node.config.get("pass_through_input"):
        return output
    if isinstance(node_input, dict) and isinstance(output, dict):
        return {**node_input, **output}
    return output


class WorkerHandler(NodeHandler):
    kind = NodeKind.WORKER

    def __init__(
        self,
        dispatcher: WorkerDispatcher,
        base_url: str | None = None,
        registry: TypeRegistry | None = None,
    ):
        self.dispatcher = dispatcher
        self.base_url = base_url
        self.registry = registry

    def resolve_endpoint(self, node: ExecutionNode) -> str:
        """Node-level ``webhook_url`` first, then the registered worker type's endpoint."""
        endpoint = node.config.get("webhook_url")
        if not endpoint and node.worker_type and self.registry is not None:
            worker_type = self.registry.get_worker_type(node.worker_type)
            endpoint = worker_type.endpoint if worker_type else None
        if not endpoint:
            raise WorkerExecutionError(
                f"Worker node '{node.id}' has no webhook_url and no registered endpoint",
                node_id=node.id,
            )
        return endpoint

    async def fire(self, ctx: FireContext) -> FireOutcome:
        claimed = await ctx.transition(NodeStatus.RUNNING, expected=ctx.claimable, input=ctx.input)
        if claimed is None:
            return FireOutcome.SKIPPED

        try:
            endpoint = self.resolve_endpoint(ctx.node)
            request = WorkerDispatchRequest(
                run_id=ctx.run_id,
                node_id=ctx.node_key,
                config=thaw(ctx.node.config),
                input=ctx.input,
                callback_url=build_callback_url(self.base_url, ctx.run_id, ctx.node_key),
            )
            await self.dispatcher.dispatch(endpoint, request)
        except WorkerExecutionError as e:
            logger.warning(
                f"Dispatch failed for {ctx.node_key}: {e}",
                extra={"event": "worker_dispatch_failed", "node_id": ctx.node_key},
            )
            await ctx.transition(NodeStatus.FAILED, expected=[NodeStatus.RUNNING], error=str(e))
            return FireOutcome.FAILED

        logger.info(
            f"Dispatched {ctx.node_key} to {endpoint}",
            extra={
                "event": "worker_dispatched",
                "endpoint": endpoint,
                "attempt": claimed.attempts,
            },
        )
        if ctx.events is not None:
            await ctx.events.emit_node_dispatched(ctx.run_id, ctx.node_key, endpoint)
        return FireOutcome.DISPATCHED
