"""
Splitter - fan an array out into parallel instances.

The Splitter's own completion and every ``{downstream}_{i}`` instance are
written in one batch, so no reader ever sees some branches without the
others. Each instance starts pending with element *i* pre-seeded as its
output; when it fires, that element stands in for the Splitter's output.
The walker fires the instances once the Splitter's completion is walked.
"""

import logging

from edgeflow.engine.handlers.base import FireContext, FireOutcome, NodeHandler
from edgeflow.engine.inputs import get_path
from edgeflow.engine.parallel import instance_key
from edgeflow.engine.status import validate_transition
from edgeflow.graph.definition import NodeKind
from edgeflow.schemas.run import NodeState, NodeStatus, utcnow
from edgeflow.storage.base import NodeWrite

logger = logging.getLogger(__name__)

_MISSING = object()


class SplitterHandler(NodeHandler):
    kind = NodeKind.SPLITTER

    async def fire(self, ctx: FireContext) -> FireOutcome:
        claimed = await ctx.transition(NodeStatus.RUNNING, expected=ctx.claimable, input=ctx.input)
        if claimed is None:
            return FireOutcome.SKIPPED

        array_path = ctx.node.config.get("array_path")
        items = get_path(ctx.input, array_path, _MISSING) if array_path else _MISSING
        if items is _MISSING or not isinstance(items, list):
            if not array_path:
                error = f"Splitter '{ctx.node.id}' has no array_path configured"
            elif items is _MISSING:
                error = f"Splitter '{ctx.node.id}' found nothing at '{array_path}'"
            else:
                error = (
                    f"Splitter '{ctx.node.id}' expected an array at '{array_path}', "
                    f"got {type(items).__name__}"
                )
            await ctx.transition(NodeStatus.FAILED, expected=[NodeStatus.RUNNING], error=error)
            return FireOutcome.FAILED

        now = utcnow()
        validate_transition(NodeStatus.RUNNING, NodeStatus.COMPLETED)
        writes = [
            NodeWrite(
                node_id=ctx.node_key,
                expected=NodeStatus.RUNNING,
                state=claimed.model_copy(
                    update={
                        "status": NodeStatus.COMPLETED,
                        "output": list(items),
                        "completed_at": now,
                        "updated_at": now,
                    }
                ),
            )
        ]
        keys = []
        for downstream_id in ctx.graph.downstream_of(ctx.node.id):
            for index, element in enumerate(items):
                key = instance_key(downstream_id, index)
                keys.append(key)
                writes.append(
                    NodeWrite(
                        node_id=key,
                        expected=NodeStatus.PENDING,
                        state=NodeState(status=NodeStatus.PENDING, output=element),
                    )
                )

        if not await ctx.store.write_batch(ctx.run_id, writes):
            logger.warning(
                f"Fan-out batch for {ctx.node_key} was rejected; another writer moved a row",
                extra={"event": "fan_out_conflict"},
            )
            return FireOutcome.SKIPPED

        logger.info(
            f"Splitter {ctx.node_key} created {len(keys)} parallel instance(s) "
            f"over {len(items)} element(s)",
            extra={"event": "parallel_instances_created"},
        )
        if ctx.events is not None:
            await ctx.events.emit_node_status_changed(
                ctx.run_id, ctx.node_key, NodeStatus.COMPLETED, output=list(items)
            )
            await ctx.events.emit_parallel_instances_created(ctx.run_id, ctx.node_key, keys)
        return FireOutcome.COMPLETED
