"""
Graph Compiler - Validates a GraphDefinition and compiles it to an ExecutionGraph.

Process:
1. VALIDATION   - structure, cycles, orphans, required inputs, type references,
                  edge mappings, Splitter/Collector pairing
2. INDEXING     - id -> node table, adjacency, reverse adjacency, edge mappings
3. STRIPPING    - drop presentation-only fields
4. COMPUTATION  - entry and terminal node sets

Compilation is all-or-nothing: either an ExecutionGraph or a list of issues.
It is pure and deterministic; the same definition always yields a
structurally identical graph. Node ids are preserved exactly, since run
state and callbacks are keyed by them.
"""

import logging
from enum import StrEnum

from pydantic import BaseModel

from edgeflow.errors import CompilationError
from edgeflow.graph.definition import GraphDefinition, NodeKind
from edgeflow.graph.execution_graph import ExecutionGraph, ExecutionNode, edge_key
from edgeflow.graph.registry import TypeRegistry

logger = logging.getLogger(__name__)


class CompileIssueKind(StrEnum):
    CYCLE = "cycle"
    ORPHAN = "orphan"
    MISSING_INPUT = "missing_input"
    UNKNOWN_TYPE = "unknown_type"
    UNKNOWN_WORKER_TYPE = "unknown_worker_type"
    DANGLING_EDGE = "dangling_edge"
    DUPLICATE_NODE = "duplicate_node"
    DUPLICATE_EDGE = "duplicate_edge"
    INVALID_MAPPING = "invalid_mapping"
    FAN_OUT_MISMATCH = "fan_out_mismatch"


class CompileIssue(BaseModel):
    """A single validation failure."""

    kind: CompileIssueKind
    message: str
    node: str | None = None
    edge: str | None = None
    field: str | None = None
    path: list[str] | None = None  # full cycle path for CYCLE issues


class CompileResult(BaseModel):
    """Either an execution graph or the issues that prevented one."""

    execution_graph: ExecutionGraph | None = None
    errors: list[CompileIssue] = []

    @property
    def success(self) -> bool:
        return self.execution_graph is not None and not self.errors


def compile_graph(
    definition: GraphDefinition, registry: TypeRegistry | None = None
) -> CompileResult:
    """
    Compile an author-time graph.

    Args:
        definition: The graph to compile
        registry: Known node and worker types (defaults to the built-in node kinds)

    Returns:
        CompileResult with either ``execution_graph`` or ``errors`` set
    """
    registry = registry or TypeRegistry()

    issues = _validate_structure(definition)
    if issues:
        # Cycle/orphan analysis needs a well-formed node set and edge list
        return CompileResult(errors=issues)

    adjacency = _build_adjacency(definition)
    issues.extend(detect_cycles(definition, adjacency))
    issues.extend(detect_orphans(definition, adjacency))
    issues.extend(validate_required_inputs(definition))
    issues.extend(validate_type_references(definition, registry))
    issues.extend(validate_edge_mappings(definition))
    issues.extend(validate_fan_out_pairs(definition, adjacency))

    if issues:
        logger.info(
            f"Graph compilation failed with {len(issues)} issue(s)",
            extra={"event": "compile_failed"},
        )
        return CompileResult(errors=issues)

    upstream: dict[str, list[str]] = {node.id: [] for node in definition.nodes}
    edge_mappings: dict[str, dict[str, str]] = {}
    for edge in definition.edges:
        upstream[edge.target].append(edge.source)
        if edge.mapping:
            edge_mappings[edge_key(edge.source, edge.target)] = dict(edge.mapping)

    nodes = {
        node.id: ExecutionNode(
            id=node.id,
            type=node.type,
            worker_type=node.worker_type,
            config=dict(node.config),
            inputs=dict(node.inputs),
        )
        for node in definition.nodes
    }

    graph = ExecutionGraph(
        nodes=nodes,
        adjacency={node_id: tuple(targets) for node_id, targets in adjacency.items()},
        upstream={node_id: tuple(sources) for node_id, sources in upstream.items()},
        edge_mappings=edge_mappings,
        entry_node_ids=tuple(n for n in nodes if not upstream[n]),
        terminal_node_ids=tuple(n for n in nodes if not adjacency[n]),
    )
    return CompileResult(execution_graph=graph)


def compile_or_raise(
    definition: GraphDefinition, registry: TypeRegistry | None = None
) -> ExecutionGraph:
    """Compile, raising CompilationError instead of returning issues."""
    result = compile_graph(definition, registry)
    if not result.success:
        raise CompilationError(result.errors)
    return result.execution_graph


# ---------------------------------------------------------------------------
# Validations
# ---------------------------------------------------------------------------


def _validate_structure(definition: GraphDefinition) -> list[CompileIssue]:
    issues: list[CompileIssue] = []
    seen: set[str] = set()
    for node in definition.nodes:
        if node.id in seen:
            issues.append(
                CompileIssue(
                    kind=CompileIssueKind.DUPLICATE_NODE,
                    node=node.id,
                    message=f"Duplicate node id '{node.id}'",
                )
            )
        seen.add(node.id)

    pairs: set[tuple[str, str]] = set()
    for edge in definition.edges:
        for end in (edge.source, edge.target):
            if end not in seen:
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.DANGLING_EDGE,
                        edge=edge.id,
                        node=end,
                        message=f"Edge '{edge.id}' references missing node '{end}'",
                    )
                )
        if (edge.source, edge.target) in pairs:
            issues.append(
                CompileIssue(
                    kind=CompileIssueKind.DUPLICATE_EDGE,
                    edge=edge.id,
                    node=edge.target,
                    message=(
                        f"Edge '{edge.id}' repeats an existing edge "
                        f"'{edge.source}' -> '{edge.target}'"
                    ),
                )
            )
        pairs.add((edge.source, edge.target))
    return issues


def _build_adjacency(definition: GraphDefinition) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        adjacency[edge.source].append(edge.target)
    return adjacency


def detect_cycles(
    definition: GraphDefinition, adjacency: dict[str, list[str]]
) -> list[CompileIssue]:
    """
    Depth-first search with white/gray/black colouring.

    Reaching a gray node means a back-edge; the reported path runs from that
    node around the cycle and back to it. Every distinct back-edge is reported.

    The traversal keeps an explicit stack of (node, remaining neighbors)
    frames, so graph depth is not bounded by the interpreter's recursion
    limit.
    """
    white, gray, black = 0, 1, 2
    color = {node.id: white for node in definition.nodes}
    issues: list[CompileIssue] = []

    for root in definition.nodes:
        if color[root.id] != white:
            continue
        color[root.id] = gray
        path = [root.id]
        stack = [iter(adjacency[root.id])]
        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                stack.pop()
                color[path.pop()] = black
            elif color[neighbor] == gray:
                cycle = path[path.index(neighbor) :] + [neighbor]
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.CYCLE,
                        node=neighbor,
                        path=cycle,
                        message=f"Graph contains a cycle: {' -> '.join(cycle)}",
                    )
                )
            elif color[neighbor] == white:
                color[neighbor] = gray
                path.append(neighbor)
                stack.append(iter(adjacency[neighbor]))
    return issues


def detect_orphans(
    definition: GraphDefinition, adjacency: dict[str, list[str]]
) -> list[CompileIssue]:
    """Every non-entry node must be reachable from some entry node."""
    has_incoming = {edge.target for edge in definition.edges}
    entries = [node.id for node in definition.nodes if node.id not in has_incoming]

    reachable: set[str] = set()
    to_visit = list(entries)
    while to_visit:
        current = to_visit.pop()
        if current in reachable:
            continue
        reachable.add(current)
        to_visit.extend(adjacency[current])

    return [
        CompileIssue(
            kind=CompileIssueKind.ORPHAN,
            node=node.id,
            message=f"Node '{node.id}' is unreachable from any entry node",
        )
        for node in definition.nodes
        if node.id not in reachable
    ]


def validate_required_inputs(definition: GraphDefinition) -> list[CompileIssue]:
    """
    Every required input needs an explicit edge mapping or a static default.

    An unmapped edge does not satisfy a required input even if the upstream
    output happens to contain a field of the same name.
    """
    mapped: dict[str, set[str]] = {}
    for edge in definition.edges:
        if edge.mapping:
            mapped.setdefault(edge.target, set()).update(edge.mapping)

    issues = []
    for node in definition.nodes:
        for name, spec in node.inputs.items():
            if spec.required and name not in mapped.get(node.id, set()) and not spec.has_default:
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.MISSING_INPUT,
                        node=node.id,
                        field=name,
                        message=(
                            f"Required input '{name}' on node '{node.id}' has no explicit "
                            "edge mapping or default value"
                        ),
                    )
                )
    return issues


def validate_type_references(
    definition: GraphDefinition, registry: TypeRegistry
) -> list[CompileIssue]:
    issues = []
    for node in definition.nodes:
        if not registry.has_node_type(node.type):
            issues.append(
                CompileIssue(
                    kind=CompileIssueKind.UNKNOWN_TYPE,
                    node=node.id,
                    message=(
                        f"Unknown node type '{node.type}' on node '{node.id}'. "
                        f"Valid types: {', '.join(registry.node_types)}"
                    ),
                )
            )
        elif (
            node.type == NodeKind.WORKER
            and node.worker_type
            and not registry.has_worker_type(node.worker_type)
        ):
            issues.append(
                CompileIssue(
                    kind=CompileIssueKind.UNKNOWN_WORKER_TYPE,
                    node=node.id,
                    message=(
                        f"Unknown worker type '{node.worker_type}' on node '{node.id}'. "
                        f"Valid worker types: {', '.join(registry.worker_types) or 'none'}"
                    ),
                )
            )
    return issues


def validate_edge_mappings(definition: GraphDefinition) -> list[CompileIssue]:
    issues = []
    for edge in definition.edges:
        if not edge.mapping:
            continue
        target = definition.get_node(edge.target)
        for target_field, source_path in edge.mapping.items():
            if target.inputs and target_field not in target.inputs:
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.INVALID_MAPPING,
                        edge=edge.id,
                        field=target_field,
                        message=(
                            f"Edge '{edge.id}' maps to undeclared input '{target_field}' "
                            f"on node '{target.id}'"
                        ),
                    )
                )
            if not source_path or not source_path.strip():
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.INVALID_MAPPING,
                        edge=edge.id,
                        field=target_field,
                        message=(
                            f"Edge '{edge.id}' has an empty source path for input '{target_field}'"
                        ),
                    )
                )
    return issues


def validate_fan_out_pairs(
    definition: GraphDefinition, adjacency: dict[str, list[str]]
) -> list[CompileIssue]:
    """
    Splitters fan out exactly one level deep and must be closed by a Collector.

    Parallel instances are created for the nodes directly downstream of a
    Splitter, so those nodes may only feed Collectors. A Collector over a
    parallel branch collects that branch alone; any other Collector is a
    plain fan-in of its upstream nodes.
    """
    kinds = {node.id: node.type for node in definition.nodes}
    upstream: dict[str, list[str]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        upstream[edge.target].append(edge.source)

    issues = []
    for node in definition.nodes:
        if node.type == NodeKind.SPLITTER:
            branches = adjacency[node.id]
            if not branches:
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.FAN_OUT_MISMATCH,
                        node=node.id,
                        message=f"Splitter '{node.id}' has no downstream nodes",
                    )
                )
            for branch in branches:
                if kinds[branch] in (NodeKind.SPLITTER, NodeKind.COLLECTOR):
                    issues.append(
                        CompileIssue(
                            kind=CompileIssueKind.FAN_OUT_MISMATCH,
                            node=branch,
                            message=(
                                f"Splitter '{node.id}' must feed a branch node, "
                                f"not {kinds[branch]} '{branch}'"
                            ),
                        )
                    )
                    continue
                splitters = [u for u in upstream[branch] if kinds[u] == NodeKind.SPLITTER]
                if len(splitters) > 1 and splitters[0] == node.id:
                    issues.append(
                        CompileIssue(
                            kind=CompileIssueKind.FAN_OUT_MISMATCH,
                            node=branch,
                            message=(
                                f"Parallel branch '{branch}' is fed by more than one Splitter: "
                                f"{', '.join(splitters)}"
                            ),
                        )
                    )
                followers = adjacency[branch]
                if not followers or any(kinds[f] != NodeKind.COLLECTOR for f in followers):
                    issues.append(
                        CompileIssue(
                            kind=CompileIssueKind.FAN_OUT_MISMATCH,
                            node=branch,
                            message=(
                                f"Parallel branch '{branch}' of Splitter '{node.id}' "
                                "must feed only Collector nodes"
                            ),
                        )
                    )

        elif node.type == NodeKind.COLLECTOR:
            sources = upstream[node.id]
            if not sources:
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.FAN_OUT_MISMATCH,
                        node=node.id,
                        message=f"Collector '{node.id}' has no upstream nodes",
                    )
                )
            parallel = [
                s for s in sources if any(kinds[u] == NodeKind.SPLITTER for u in upstream[s])
            ]
            if parallel and len(sources) > 1:
                issues.append(
                    CompileIssue(
                        kind=CompileIssueKind.FAN_OUT_MISMATCH,
                        node=node.id,
                        message=(
                            f"Collector '{node.id}' collects parallel branch '{parallel[0]}' "
                            "and must have no other upstream nodes"
                        ),
                    )
                )
    return issues
