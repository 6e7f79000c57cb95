"""Node-type variants: Worker, Splitter, Collector, UserGate."""

from edgeflow.engine.handlers.base import FireContext, FireOutcome, NodeHandler
from edgeflow.engine.handlers.collector import CollectorHandler
from edgeflow.engine.handlers.splitter import SplitterHandler
from edgeflow.engine.handlers.user_gate import UserGateHandler
from edgeflow.engine.handlers.worker import WorkerHandler, merge_pass_through

__all__ = [
    "FireContext",
    "FireOutcome",
    "NodeHandler",
    "WorkerHandler",
    "SplitterHandler",
    "CollectorHandler",
    "UserGateHandler",
    "merge_pass_through",
]
