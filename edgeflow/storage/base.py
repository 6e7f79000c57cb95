"""
Run Store - The persisted, atomically-updated home of every Run.

The store is the only shared mutable resource in the engine. There is no
authoritative in-memory copy of a run anywhere else; every read goes to the
store and every write is a per-row conditional update:

    compare_and_set(run, node, expected_status, new_state)

succeeds only if the node's stored status (absent = pending) still equals
``expected_status``. ``transition`` layers the status state machine on top
of that primitive, so concurrent walkers racing on the same node cannot both
claim it.

Concurrent writes that keep the same status (Collector progress updates)
are last-write-wins. The run's own status is never written from a separate
read: ``update_run_status`` derives it from the node states inside the same
atomic step that stores it.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from edgeflow.engine.status import validate_transition
from edgeflow.schemas.run import NodeState, NodeStatus, Run, RunStatus, utcnow

_UNSET: Any = object()

DeriveStatus = Callable[[Mapping[str, NodeState]], RunStatus]


def completion_time(status: RunStatus) -> datetime | None:
    """When a run entering ``status`` finished, or None if it is still live."""
    if status in (RunStatus.COMPLETED, RunStatus.FAILED):
        return utcnow()
    return None


@dataclass
class NodeWrite:
    """One row of an all-or-nothing batch write."""

    node_id: str
    expected: NodeStatus
    state: NodeState


@dataclass
class StaleNode:
    run_id: str
    node_id: str
    state: NodeState


class RunStore(ABC):
    """Abstract run storage. Subclasses implement the primitives below."""

    # === PRIMITIVES ===

    @abstractmethod
    async def create_run(self, run: Run) -> None:
        """Persist a new run and any node states it already carries."""

    @abstractmethod
    async def get_run(self, run_id: str) -> Run | None:
        """Load a full snapshot of a run, node states included."""

    @abstractmethod
    async def get_node_state(self, run_id: str, node_id: str) -> NodeState | None: ...

    @abstractmethod
    async def compare_and_set(
        self, run_id: str, node_id: str, expected: NodeStatus, new_state: NodeState
    ) -> bool:
        """Write ``new_state`` only if the stored status equals ``expected``."""

    @abstractmethod
    async def write_batch(self, run_id: str, writes: list[NodeWrite]) -> bool:
        """
        Apply every write or none of them.

        Each row is checked against its own expected status; a single
        mismatch aborts the whole batch and returns False.
        """

    @abstractmethod
    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        completed_at: datetime | None = None,
        expected: RunStatus | None = None,
    ) -> bool:
        """Overwrite a run's status; with ``expected``, only if it still holds."""

    @abstractmethod
    async def update_run_status(self, run_id: str, derive: DeriveStatus) -> tuple[Run, RunStatus]:
        """
        Re-derive a run's status from its node states and store it, atomically.

        ``derive`` sees the node states as they are at the moment of the
        write, so a status derived from an older read can never land on top
        of a newer one.

        Returns:
            The run as it was before the update, and the derived status.
            The status changed only if the two differ.
        """

    @abstractmethod
    async def list_runs(self, status: RunStatus | None = None) -> list[Run]: ...

    @abstractmethod
    async def find_stale_nodes(self, updated_before: datetime) -> list[StaleNode]:
        """Nodes still ``running`` whose last update is older than ``updated_before``."""

    async def close(self) -> None:
        return None

    # === STATE-MACHINE-GUARDED WRITES ===

    async def transition(
        self,
        run_id: str,
        node_id: str,
        to_status: NodeStatus,
        *,
        expected: Iterable[NodeStatus] | None = None,
        input: Any = _UNSET,
        output: Any = _UNSET,
        error: Any = _UNSET,
    ) -> NodeState | None:
        """
        Move a node to ``to_status``.

        Reads the current status, validates the transition, then writes with
        compare-and-set against the status it read.

        Args:
            expected: If given, the node must currently be in one of these
                statuses; otherwise nothing is written.
            input/output/error: Fields to record with the new status. Leaving
                the node (re)entering ``running`` clears ``output`` and
                ``error`` unless given.

        Returns:
            The stored state, or None if the node was not in an expected
            status or another writer changed it first.

        Raises:
            StatusTransitionError: The transition itself is illegal.
        """
        current = await self.get_node_state(run_id, node_id) or NodeState()
        from_status = current.status
        if expected is not None and from_status not in set(expected):
            return None

        validate_transition(from_status, to_status)

        now = utcnow()
        updates: dict[str, Any] = {"status": to_status, "updated_at": now}
        restarting = to_status == NodeStatus.RUNNING and from_status in (
            NodeStatus.PENDING,
            NodeStatus.FAILED,
        )
        if restarting:
            updates.update(
                attempts=current.attempts + 1,
                started_at=now,
                completed_at=None,
                output=None,
                error=None,
            )
        if to_status in (NodeStatus.COMPLETED, NodeStatus.FAILED) and from_status != to_status:
            updates["completed_at"] = now
        if to_status == NodeStatus.COMPLETED:
            updates["error"] = None

        if input is not _UNSET:
            updates["input"] = input
        if output is not _UNSET:
            updates["output"] = output
        if error is not _UNSET:
            updates["error"] = error

        new_state = current.model_copy(update=updates)
        if not await self.compare_and_set(run_id, node_id, from_status, new_state):
            return None
        return new_state
