"""
Parallel instance keys.

A Splitter over an array of N elements creates N instances of each node
directly downstream of it, keyed ``{node_id}_{index}``. These helpers map
between instance keys and logical node ids. They consult the graph, so a
node whose real id happens to end in ``_<digits>`` is never mistaken for
an instance of some other node.
"""

import re
from collections.abc import Mapping

from edgeflow.graph.definition import NodeKind
from edgeflow.graph.execution_graph import ExecutionGraph
from edgeflow.schemas.run import NodeState, NodeStatus

_INSTANCE_KEY = re.compile(r"^(?P<base>.+)_(?P<index>\d+)$")


def instance_key(node_id: str, index: int) -> str:
    return f"{node_id}_{index}"


def split_instance_key(key: str) -> tuple[str, int] | None:
    """``"worker_2"`` -> ``("worker", 2)``; None if the key has no index suffix."""
    match = _INSTANCE_KEY.match(key)
    if not match:
        return None
    return match.group("base"), int(match.group("index"))


def logical_node_id(key: str, graph: ExecutionGraph) -> str:
    """Recover the logical node id for a node-state key."""
    if key in graph.nodes:
        return key
    parsed = split_instance_key(key)
    if parsed and parsed[0] in graph.nodes:
        return parsed[0]
    return key


def is_instance_key(key: str, graph: ExecutionGraph) -> bool:
    return key not in graph.nodes and logical_node_id(key, graph) != key


def splitter_upstream(graph: ExecutionGraph, node_id: str) -> str | None:
    """The Splitter feeding ``node_id`` directly, if any."""
    for upstream_id in graph.upstream_of(node_id):
        if graph.nodes[upstream_id].type == NodeKind.SPLITTER:
            return upstream_id
    return None


def is_parallel_branch(graph: ExecutionGraph, node_id: str) -> bool:
    """True for nodes that run as one instance per Splitter element."""
    return splitter_upstream(graph, node_id) is not None


def instance_keys_for(
    node_id: str, node_states: Mapping[str, NodeState], graph: ExecutionGraph
) -> list[str]:
    """All known instance keys of a logical node, sorted by numeric index."""
    found = []
    for key in node_states:
        if key in graph.nodes:
            continue
        parsed = split_instance_key(key)
        if parsed and parsed[0] == node_id:
            found.append((parsed[1], key))
    return [key for _, key in sorted(found)]


def logical_status(
    node_id: str, node_states: Mapping[str, NodeState], graph: ExecutionGraph
) -> NodeStatus:
    """
    Status of a logical node.

    For parallel branches this is an aggregate over instances: completed
    only when every instance is completed, failed if any instance failed.
    """
    if is_parallel_branch(graph, node_id):
        keys = instance_keys_for(node_id, node_states, graph)
        if not keys:
            return NodeStatus.PENDING
        statuses = [node_states[k].status for k in keys]
        if all(s == NodeStatus.COMPLETED for s in statuses):
            return NodeStatus.COMPLETED
        if any(s == NodeStatus.FAILED for s in statuses):
            return NodeStatus.FAILED
        if any(s == NodeStatus.WAITING_FOR_USER for s in statuses):
            return NodeStatus.WAITING_FOR_USER
        if any(s == NodeStatus.RUNNING for s in statuses):
            return NodeStatus.RUNNING
        return NodeStatus.PENDING

    state = node_states.get(node_id)
    return state.status if state else NodeStatus.PENDING
