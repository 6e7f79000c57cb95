"""
edgeflow - an edge-walking workflow execution engine.

Compile a graph once per saved version, then execute runs of it by walking
edges from each node completion. Workers are external services that report
back through callbacks; all run state lives in the run store.
"""

from edgeflow.config import EngineConfig
from edgeflow.engine.engine import WorkflowEngine
from edgeflow.engine.reconciler import StaleNodeReconciler
from edgeflow.errors import (
    CollectorAggregateError,
    CompilationError,
    EdgeflowError,
    StatusTransitionError,
    WorkerExecutionError,
)
from edgeflow.graph import GraphDefinition, compile_graph, compile_or_raise
from edgeflow.schemas import NodeStatus, RunStatus
from edgeflow.storage import GraphVersionStore, InMemoryRunStore, SQLiteRunStore

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "WorkflowEngine",
    "StaleNodeReconciler",
    "GraphDefinition",
    "compile_graph",
    "compile_or_raise",
    "NodeStatus",
    "RunStatus",
    "GraphVersionStore",
    "InMemoryRunStore",
    "SQLiteRunStore",
    "EdgeflowError",
    "CompilationError",
    "StatusTransitionError",
    "WorkerExecutionError",
    "CollectorAggregateError",
]
