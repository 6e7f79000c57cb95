"""
Run Schema - One execution of a compiled graph version.

A Run is the only mutable record in the system. Its node states are keyed by
node id, or by ``{node_id}_{index}`` for parallel instances created by a
Splitter. Nothing about a Run lives only in process memory: any process that
can reach the store can pick it up and continue walking it.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class NodeStatus(StrEnum):
    """Execution status of a single node or parallel instance."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_FOR_USER = "waiting_for_user"


class RunStatus(StrEnum):
    """Overall status of a run, derived from its node states."""

    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeState(BaseModel):
    """
    Per-node execution record.

    Never deleted. The only way to change ``status`` is a validated
    transition through the run store.
    """

    status: NodeStatus = NodeStatus.PENDING
    input: Any | None = None
    output: Any | None = None
    error: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"extra": "allow"}


class TriggerMetadata(BaseModel):
    """Where a run came from (webhook, schedule, manual start, ...)."""

    source: str = "manual"
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class Run(BaseModel):
    """One execution instance of an ExecutionGraph version."""

    id: str
    version_id: str
    entity_id: str | None = Field(
        default=None, description="Optional id of the business entity this run is about"
    )
    trigger: TriggerMetadata = Field(default_factory=TriggerMetadata)
    input: dict[str, Any] = Field(default_factory=dict)

    status: RunStatus = RunStatus.RUNNING
    node_states: dict[str, NodeState] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    def state_of(self, node_key: str) -> NodeState | None:
        return self.node_states.get(node_key)

    def status_of(self, node_key: str) -> NodeStatus:
        """Status of a node; a node with no record yet is pending."""
        state = self.node_states.get(node_key)
        return state.status if state else NodeStatus.PENDING


class RunSnapshot(BaseModel):
    """Read-only view served to polling and visualization clients."""

    run_id: str
    version_id: str
    status: RunStatus
    node_states: dict[str, NodeState]
    final_outputs: dict[str, Any] = Field(default_factory=dict)


# === WIRE PAYLOADS ===


class WorkerDispatchRequest(BaseModel):
    """Body sent to an external worker when a Worker node fires."""

    run_id: str
    node_id: str
    config: dict[str, Any] = Field(default_factory=dict)
    input: Any | None = None
    callback_url: str


class CallbackPayload(BaseModel):
    """Body a worker (or a person, via the completion endpoint) posts back."""

    status: NodeStatus
    output: Any | None = None
    error: str | None = None

    @field_validator("status")
    @classmethod
    def _only_final_statuses(cls, v: NodeStatus) -> NodeStatus:
        if v not in (NodeStatus.COMPLETED, NodeStatus.FAILED):
            raise ValueError("callback status must be 'completed' or 'failed'")
        return v
