"""
In-memory run store for tests and single-process deployments.

A single asyncio.Lock serializes every primitive, which makes each
compare-and-set and batch atomic with respect to other coroutines on the
same loop. Snapshots handed out are deep copies; callers can never mutate
stored state in place.
"""

import asyncio
import logging
from datetime import datetime

from edgeflow.errors import RunNotFoundError
from edgeflow.schemas.run import NodeState, NodeStatus, Run, RunStatus, utcnow
from edgeflow.storage.base import (
    DeriveStatus,
    NodeWrite,
    RunStore,
    StaleNode,
    completion_time,
)

logger = logging.getLogger(__name__)


class InMemoryRunStore(RunStore):
    def __init__(self):
        self._runs: dict[str, Run] = {}
        self._lock = asyncio.Lock()

    async def create_run(self, run: Run) -> None:
        async with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Run already exists: {run.id}")
            self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Run | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    async def get_node_state(self, run_id: str, node_id: str) -> NodeState | None:
        async with self._lock:
            run = self._require(run_id)
            state = run.node_states.get(node_id)
            return state.model_copy(deep=True) if state else None

    async def compare_and_set(
        self, run_id: str, node_id: str, expected: NodeStatus, new_state: NodeState
    ) -> bool:
        async with self._lock:
            run = self._require(run_id)
            if run.status_of(node_id) != expected:
                return False
            run.node_states[node_id] = new_state.model_copy(deep=True)
            run.updated_at = utcnow()
            return True

    async def write_batch(self, run_id: str, writes: list[NodeWrite]) -> bool:
        async with self._lock:
            run = self._require(run_id)
            for write in writes:
                if run.status_of(write.node_id) != write.expected:
                    logger.debug(f"Batch aborted: {write.node_id} is not {write.expected}")
                    return False
            for write in writes:
                run.node_states[write.node_id] = write.state.model_copy(deep=True)
            run.updated_at = utcnow()
            return True

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime | None = None,
        expected: RunStatus | None = None,
    ) -> bool:
        async with self._lock:
            run = self._require(run_id)
            if expected is not None and run.status != expected:
                return False
            run.status = status
            run.completed_at = completed_at
            run.updated_at = utcnow()
            return True

    async def update_run_status(self, run_id: str, derive: DeriveStatus) -> tuple[Run, RunStatus]:
        async with self._lock:
            run = self._require(run_id)
            previous = run.model_copy(deep=True)
            status = derive(previous.node_states)
            if status != run.status:
                run.status = status
                run.completed_at = completion_time(status)
                run.updated_at = utcnow()
            return previous, status

    async def list_runs(self, status: RunStatus | None = None) -> list[Run]:
        async with self._lock:
            return [
                run.model_copy(deep=True)
                for run in self._runs.values()
                if status is None or run.status == status
            ]

    async def find_stale_nodes(self, updated_before: datetime) -> list[StaleNode]:
        async with self._lock:
            stale = []
            for run in self._runs.values():
                for node_id, state in run.node_states.items():
                    if state.status == NodeStatus.RUNNING and state.updated_at < updated_before:
                        stale.append(StaleNode(run.id, node_id, state.model_copy(deep=True)))
            return stale

    def _require(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run
