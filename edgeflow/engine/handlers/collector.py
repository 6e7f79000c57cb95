"""
Collector - fan parallel branches (or plain upstreams) back in.

Fired after every upstream completion or failure, possibly concurrently.
Each firing re-reads the branch states and decides:

- a branch failed          -> fail the Collector now, naming the branch
- fewer completed than N   -> record progress, stay pending
- all N completed          -> complete with outputs ordered by branch index

N for a parallel branch is the length of the Splitter's array, so the
Collector can never complete over a partial set of instances. Completion
order never affects the output order. A failed plain upstream fails the
Collector the same way a failed parallel instance does.
"""

import logging

from edgeflow.engine.handlers.base import FireContext, FireOutcome, NodeHandler
from edgeflow.engine.parallel import instance_keys_for, is_parallel_branch, splitter_upstream
from edgeflow.errors import CollectorAggregateError, RunNotFoundError
from edgeflow.graph.definition import NodeKind
from edgeflow.runtime.event_bus import EventType, RunEvent
from edgeflow.schemas.run import NodeStatus, Run

logger = logging.getLogger(__name__)


class CollectorHandler(NodeHandler):
    kind = NodeKind.COLLECTOR
    gates_on_upstream = False

    def branches(self, ctx: FireContext, run: Run) -> tuple[list[str], int] | None:
        """
        Keys of the branches to collect and how many are expected.

        None when the fan-out has not happened yet.
        """
        upstream = ctx.graph.upstream_of(ctx.node.id)
        if len(upstream) == 1 and is_parallel_branch(ctx.graph, upstream[0]):
            branch = upstream[0]
            splitter = run.state_of(splitter_upstream(ctx.graph, branch))
            if splitter is None or splitter.status != NodeStatus.COMPLETED:
                return None
            keys = instance_keys_for(branch, run.node_states, ctx.graph)
            expected = len(splitter.output) if isinstance(splitter.output, list) else len(keys)
            return keys, expected
        return list(upstream), len(upstream)

    async def fire(self, ctx: FireContext) -> FireOutcome:
        run = await ctx.store.get_run(ctx.run_id)
        if run is None:
            raise RunNotFoundError(ctx.run_id)

        own_status = run.status_of(ctx.node_key)
        if own_status not in (NodeStatus.PENDING, NodeStatus.FAILED):
            return FireOutcome.SKIPPED

        found = self.branches(ctx, run)
        if found is None:
            return FireOutcome.SKIPPED
        keys, expected = found

        for key in keys:
            state = run.state_of(key)
            if state is not None and state.status == NodeStatus.FAILED:
                return await self._short_circuit(ctx, own_status, key, state.error)

        completed = sum(1 for key in keys if run.status_of(key) == NodeStatus.COMPLETED)
        if completed < expected or len(keys) < expected:
            if own_status == NodeStatus.PENDING:
                # Progress-only write; concurrent progress writes are last-write-wins
                await ctx.store.transition(
                    ctx.run_id,
                    ctx.node_key,
                    NodeStatus.PENDING,
                    expected=[NodeStatus.PENDING],
                    output={"completed": completed, "expected": expected},
                )
                logger.debug(
                    f"Collector {ctx.node_key}: {completed}/{expected} branches completed",
                    extra={"event": "collector_progress"},
                )
                if ctx.events is not None:
                    await ctx.events.publish(
                        RunEvent(
                            type=EventType.COLLECTOR_PROGRESS,
                            run_id=ctx.run_id,
                            node_id=ctx.node_key,
                            data={"completed": completed, "expected": expected},
                        )
                    )
            return FireOutcome.WAITING

        claimed = await ctx.transition(
            NodeStatus.RUNNING,
            expected=[NodeStatus.PENDING, NodeStatus.FAILED],
            input={"branches": keys},
        )
        if claimed is None:
            return FireOutcome.SKIPPED

        outputs = [run.node_states[key].output for key in keys]
        await ctx.transition(NodeStatus.COMPLETED, expected=[NodeStatus.RUNNING], output=outputs)
        logger.info(
            f"Collector {ctx.node_key} completed with {len(outputs)} result(s)",
            extra={"event": "collector_completed"},
        )
        return FireOutcome.COMPLETED

    async def _short_circuit(
        self, ctx: FireContext, own_status: NodeStatus, failed_key: str, branch_error: str | None
    ) -> FireOutcome:
        if own_status == NodeStatus.FAILED:
            return FireOutcome.SKIPPED

        claimed = await ctx.transition(NodeStatus.RUNNING, expected=[NodeStatus.PENDING])
        if claimed is None:
            return FireOutcome.SKIPPED

        error = CollectorAggregateError(ctx.node.id, failed_key, branch_error)
        await ctx.transition(
            NodeStatus.FAILED,
            expected=[NodeStatus.RUNNING],
            error=str(error),
            output={"failed_branch": failed_key},
        )
        logger.warning(str(error), extra={"event": "collector_short_circuit"})
        return FireOutcome.FAILED
