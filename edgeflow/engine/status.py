"""
Status State Machine.

Every node-state mutation in the engine passes through validate_transition
before it is persisted:

    pending           -> running
    running           -> completed | failed | waiting_for_user
    completed         -> (terminal)
    failed            -> running            (retry)
    waiting_for_user  -> running

A write that keeps the same status is always allowed. Collectors rely on
this to record progress without changing status.
"""

from collections.abc import Mapping
from typing import Any

from edgeflow.errors import StatusTransitionError
from edgeflow.graph.execution_graph import ExecutionGraph
from edgeflow.schemas.run import NodeState, NodeStatus, RunStatus

ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.WAITING_FOR_USER}
    ),
    NodeStatus.COMPLETED: frozenset(),
    NodeStatus.FAILED: frozenset({NodeStatus.RUNNING}),
    NodeStatus.WAITING_FOR_USER: frozenset({NodeStatus.RUNNING}),
}


def can_transition(from_status: str, to_status: str) -> bool:
    if from_status == to_status:
        return True
    allowed = ALLOWED_TRANSITIONS.get(NodeStatus(from_status), frozenset())
    return NodeStatus(to_status) in allowed


def validate_transition(from_status: str, to_status: str) -> None:
    """Raise StatusTransitionError unless ``from_status -> to_status`` is legal."""
    if not can_transition(from_status, to_status):
        raise StatusTransitionError(str(from_status), str(to_status))


def derive_run_status(graph: ExecutionGraph, node_states: Mapping[str, NodeState]) -> RunStatus:
    """
    Overall run status from node states.

    Priority: anything running, then anything waiting for a person, then
    any failure. A run is completed once every terminal node is completed.
    Otherwise some node is still waiting to be reached, so it is running.
    """
    statuses = {state.status for state in node_states.values()}
    if NodeStatus.RUNNING in statuses:
        return RunStatus.RUNNING
    if NodeStatus.WAITING_FOR_USER in statuses:
        return RunStatus.WAITING_FOR_USER
    if NodeStatus.FAILED in statuses:
        return RunStatus.FAILED
    if all(
        _status(node_states, terminal) == NodeStatus.COMPLETED
        for terminal in graph.terminal_node_ids
    ):
        return RunStatus.COMPLETED
    return RunStatus.RUNNING


def final_outputs(graph: ExecutionGraph, node_states: Mapping[str, NodeState]) -> dict[str, Any]:
    """Outputs of the completed terminal nodes, keyed by node id."""
    return {
        terminal: node_states[terminal].output
        for terminal in graph.terminal_node_ids
        if _status(node_states, terminal) == NodeStatus.COMPLETED
    }


def _status(node_states: Mapping[str, NodeState], key: str) -> NodeStatus:
    state = node_states.get(key)
    return state.status if state else NodeStatus.PENDING
