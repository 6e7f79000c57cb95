"""
Input assembly for a node about to fire.

For every upstream of the target, in the graph's upstream order:
- an edge mapping copies only the mapped paths, under their mapped names
- otherwise a keyed (dict) output is shallow-merged into the input
- otherwise the output is stored under the upstream node's id

Upstream order is fixed at compile time, so the result does not depend on
which upstream happened to finish last. Declared defaults fill any input
still missing afterwards. Entry nodes receive the run's input.
"""

from collections.abc import Mapping
from typing import Any

from edgeflow.engine.parallel import split_instance_key
from edgeflow.graph.definition import NodeKind
from edgeflow.graph.execution_graph import ExecutionGraph
from edgeflow.schemas.run import Run

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path such as ``"result.items.0.text"``.

    Integer segments index into lists. Returns ``default`` when any segment
    is missing.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list | tuple) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def merge_upstream_output(
    target_input: dict[str, Any],
    upstream_id: str,
    output: Any,
    mapping: Mapping[str, str] | None,
) -> None:
    if mapping:
        for target_field, source_path in mapping.items():
            value = get_path(output, source_path, _MISSING)
            if value is not _MISSING:
                target_input[target_field] = value
    elif isinstance(output, dict):
        target_input.update(output)
    elif output is not None:
        target_input[upstream_id] = output


def build_input(graph: ExecutionGraph, run: Run, node_key: str, node_id: str) -> dict[str, Any]:
    """
    Assemble the input for ``node_key`` (a node id or a parallel instance key).

    For a parallel instance, the Splitter's contribution is the element seeded
    into the instance's own state, not the Splitter's whole output.
    """
    node = graph.nodes[node_id]
    result: dict[str, Any] = {}

    if graph.is_entry(node_id):
        result.update(run.input)

    instance_seed = _MISSING
    if node_key != node_id and split_instance_key(node_key):
        seeded = run.state_of(node_key)
        if seeded is not None:
            instance_seed = seeded.output

    for upstream_id in graph.upstream_of(node_id):
        upstream = graph.nodes[upstream_id]
        if upstream.type == NodeKind.SPLITTER and instance_seed is not _MISSING:
            output = instance_seed
        else:
            state = run.state_of(upstream_id)
            output = state.output if state else None
        merge_upstream_output(result, upstream_id, output, graph.mapping_for(upstream_id, node_id))

    for name, spec in node.inputs.items():
        if name not in result and spec.has_default:
            result[name] = spec.default

    return result
