"""
Exception hierarchy for the execution engine.

Compilation problems never reach execution: they are reported as a list of
CompileIssue records and, where an exception is needed, wrapped in a single
CompilationError. Everything that can go wrong while a run is executing is
local to the node it happened on and is recorded as a failed NodeState.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from edgeflow.graph.compiler import CompileIssue


class EdgeflowError(Exception):
    """Base class for all engine errors."""


class CompilationError(EdgeflowError):
    """A graph definition failed validation."""

    def __init__(self, issues: list[CompileIssue]):
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues[:3])
        if len(self.issues) > 3:
            summary += f" (+{len(self.issues) - 3} more)"
        super().__init__(f"Graph failed to compile: {summary}")


class StatusTransitionError(EdgeflowError):
    """An illegal node status transition was attempted."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition from '{from_status}' to '{to_status}'")


class WorkerExecutionError(EdgeflowError):
    """Dispatch to an external worker failed, or the worker reported failure."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class CollectorAggregateError(EdgeflowError):
    """One parallel branch feeding a Collector failed."""

    def __init__(self, collector_id: str, failed_branch: str, branch_error: str | None = None):
        self.collector_id = collector_id
        self.failed_branch = failed_branch
        self.branch_error = branch_error
        detail = f": {branch_error}" if branch_error else ""
        super().__init__(
            f"Collector '{collector_id}' failed because branch '{failed_branch}' failed{detail}"
        )


class RunNotFoundError(EdgeflowError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class NodeNotFoundError(EdgeflowError):
    def __init__(self, run_id: str, node_id: str):
        self.run_id = run_id
        self.node_id = node_id
        super().__init__(f"Node not found in run {run_id}: {node_id}")


class VersionNotFoundError(EdgeflowError):
    def __init__(self, version_id: str):
        self.version_id = version_id
        super().__init__(f"Graph version not found: {version_id}")


class InvalidCallbackError(EdgeflowError):
    """A callback or completion payload is malformed."""


class NodeStateConflictError(EdgeflowError):
    """The node is not in a state that allows the requested operation."""

    def __init__(self, node_id: str, status: str, expected: str):
        self.node_id = node_id
        self.status = status
        self.expected = expected
        super().__init__(f"Node '{node_id}' is '{status}', expected '{expected}'")
