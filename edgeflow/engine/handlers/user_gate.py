"""UserGate - park the node in waiting_for_user until a person completes it."""

import logging

from edgeflow.engine.handlers.base import FireContext, FireOutcome, NodeHandler
from edgeflow.graph.definition import NodeKind
from edgeflow.graph.execution_graph import thaw
from edgeflow.schemas.run import NodeStatus

logger = logging.getLogger(__name__)


class UserGateHandler(NodeHandler):
    kind = NodeKind.USER_GATE

    async def fire(self, ctx: FireContext) -> FireOutcome:
        claimed = await ctx.transition(NodeStatus.RUNNING, expected=ctx.claimable, input=ctx.input)
        if claimed is None:
            return FireOutcome.SKIPPED

        await ctx.transition(NodeStatus.WAITING_FOR_USER, expected=[NodeStatus.RUNNING])
        logger.info(
            f"Waiting for user input on {ctx.node_key}",
            extra={"event": "user_input_requested"},
        )
        if ctx.events is not None:
            await ctx.events.emit_user_input_requested(
                ctx.run_id,
                ctx.node_key,
                prompt=thaw(ctx.node.config.get("prompt")),
                input_data=ctx.input,
            )
        return FireOutcome.WAITING
