"""Graph definition, type registry, compiler and compiled execution graph."""

from edgeflow.graph.compiler import (
    CompileIssue,
    CompileIssueKind,
    CompileResult,
    compile_graph,
    compile_or_raise,
)
from edgeflow.graph.definition import (
    EdgeDefinition,
    GraphDefinition,
    InputSpec,
    NodeDefinition,
    NodeKind,
)
from edgeflow.graph.execution_graph import ExecutionGraph, ExecutionNode
from edgeflow.graph.registry import TypeRegistry, WorkerType

__all__ = [
    # Definition
    "GraphDefinition",
    "NodeDefinition",
    "EdgeDefinition",
    "InputSpec",
    "NodeKind",
    # Compilation
    "compile_graph",
    "compile_or_raise",
    "CompileResult",
    "CompileIssue",
    "CompileIssueKind",
    "ExecutionGraph",
    "ExecutionNode",
    # Registry
    "TypeRegistry",
    "WorkerType",
]
