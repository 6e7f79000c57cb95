"""
Edge-walking execution engine.

The facade lives in ``edgeflow.engine.engine`` and is re-exported from the
top-level package; this package root only exposes the state machine and
instance-key helpers, which the storage layer depends on.
"""

from edgeflow.engine.parallel import instance_key, logical_node_id, split_instance_key
from edgeflow.engine.status import (
    ALLOWED_TRANSITIONS,
    can_transition,
    derive_run_status,
    validate_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "derive_run_status",
    "validate_transition",
    "instance_key",
    "logical_node_id",
    "split_instance_key",
]
