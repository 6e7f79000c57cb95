"""Runtime services around the engine: the event bus and the HTTP server."""

from edgeflow.runtime.event_bus import EventBus, EventType, RunEvent

__all__ = ["EventBus", "EventType", "RunEvent"]
