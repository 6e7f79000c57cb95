"""Run and wire-payload schemas."""

from edgeflow.schemas.run import (
    CallbackPayload,
    NodeState,
    NodeStatus,
    Run,
    RunSnapshot,
    RunStatus,
    TriggerMetadata,
    WorkerDispatchRequest,
)

__all__ = [
    "CallbackPayload",
    "NodeState",
    "NodeStatus",
    "Run",
    "RunSnapshot",
    "RunStatus",
    "TriggerMetadata",
    "WorkerDispatchRequest",
]
