"""
Stale node reconciliation.

A node that has been ``running`` for longer than the staleness threshold has
most likely lost its callback (worker crashed, engine restarted mid-dispatch).
Reconciliation is out-of-band: it marks such nodes failed, which walks the
failure like any other (Collectors short-circuit), and optionally retries
them while they are under the retry limit.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from edgeflow.engine.engine import WorkflowEngine
from edgeflow.errors import EdgeflowError
from edgeflow.runtime.event_bus import EventType, RunEvent
from edgeflow.schemas.run import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    failed: list[tuple[str, str]] = field(default_factory=list)  # (run_id, node_id)
    retried: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "failed": [{"run_id": r, "node_id": n} for r, n in self.failed],
            "retried": [{"run_id": r, "node_id": n} for r, n in self.retried],
        }


class StaleNodeReconciler:
    """
    Finds and fails stale running nodes.

    Lifecycle:
        reconciler = StaleNodeReconciler(engine, stale_after_seconds=900)
        await reconciler.start(interval=60)
        # ... periodic passes ...
        await reconciler.stop()
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        stale_after_seconds: float | None = None,
        auto_retry: bool | None = None,
        max_retries: int | None = None,
    ):
        config = engine.config
        self.engine = engine
        self.stale_after = timedelta(
            seconds=stale_after_seconds
            if stale_after_seconds is not None
            else config.stale_after_seconds
        )
        self.auto_retry = config.auto_retry_stale if auto_retry is None else auto_retry
        self.max_retries = config.max_stale_retries if max_retries is None else max_retries
        self._task: asyncio.Task | None = None

    async def reconcile_once(self) -> ReconcileReport:
        """One pass over every stale node in the store."""
        report = ReconcileReport()
        cutoff = utcnow() - self.stale_after
        stale_nodes = await self.engine.store.find_stale_nodes(cutoff)

        for stale in stale_nodes:
            error = (
                f"Node exceeded the staleness threshold of "
                f"{int(self.stale_after.total_seconds())}s without a callback"
            )
            failed = await self.engine.fail_node(stale.run_id, stale.node_id, error)
            if failed is None:
                # A callback landed between the scan and the write
                continue

            report.failed.append((stale.run_id, stale.node_id))
            logger.warning(
                f"Marked stale node {stale.node_id} in run {stale.run_id} as failed",
                extra={"event": "node_stale", "node_id": stale.node_id},
            )
            await self.engine.event_bus.publish(
                RunEvent(
                    type=EventType.NODE_STALE,
                    run_id=stale.run_id,
                    node_id=stale.node_id,
                    data={"attempts": failed.attempts},
                )
            )

            # attempts counts the first try, so retries so far = attempts - 1
            if self.auto_retry and failed.attempts - 1 < self.max_retries:
                try:
                    await self.engine.retry_node(stale.run_id, stale.node_id)
                except EdgeflowError as e:
                    logger.warning(f"Auto-retry of {stale.node_id} failed: {e}")
                    continue
                report.retried.append((stale.run_id, stale.node_id))

        if report.failed:
            logger.info(
                f"Reconciled {len(report.failed)} stale node(s), retried {len(report.retried)}",
                extra={"event": "reconcile_pass"},
            )
        return report

    async def start(self, interval: float = 60.0) -> None:
        """Run reconcile passes in the background every ``interval`` seconds."""
        if self._task is not None:
            return

        async def _loop():
            while True:
                try:
                    await self.reconcile_once()
                except Exception:
                    logger.exception("Reconcile pass failed")
                await asyncio.sleep(interval)

        self._task = asyncio.create_task(_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
