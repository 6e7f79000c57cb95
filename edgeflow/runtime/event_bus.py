"""
Event Bus - Pub/sub for run lifecycle events.

The engine publishes what happened (a node changed status, a worker was
dispatched, a Splitter fanned out, a run finished). Visualization, audit and
journey-tracking consumers subscribe; the engine never depends on them.
Handler failures are logged and never propagate back into the engine.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from edgeflow.schemas.run import utcnow

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_STATUS_CHANGED = "run_status_changed"

    # Node lifecycle
    NODE_STATUS_CHANGED = "node_status_changed"
    NODE_DISPATCHED = "node_dispatched"
    NODE_RETRY = "node_retry"
    NODE_STALE = "node_stale"

    # Inbound completions
    CALLBACK_RECEIVED = "callback_received"

    # Fan-out / fan-in
    PARALLEL_INSTANCES_CREATED = "parallel_instances_created"
    COLLECTOR_PROGRESS = "collector_progress"

    # Human-in-the-loop
    USER_INPUT_REQUESTED = "user_input_requested"


@dataclass
class RunEvent:
    """An event about a run."""

    type: EventType
    run_id: str
    node_id: str | None = None  # Node or parallel instance key
    version_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "version_id": self.version_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for run lifecycle events.

    Example:
        bus = EventBus()

        async def on_run_completed(event: RunEvent):
            print(f"Run {event.run_id} completed: {event.data['final_outputs']}")

        bus.subscribe(event_types=[EventType.RUN_COMPLETED], handler=on_run_completed)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: RunEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: RunEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(
        self, run_id: str, version_id: str, input_data: dict[str, Any] | None = None
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                version_id=version_id,
                data={"input": input_data or {}},
            )
        )

    async def emit_node_status_changed(
        self,
        run_id: str,
        node_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.NODE_STATUS_CHANGED,
                run_id=run_id,
                node_id=node_id,
                data={"status": str(status), "output": output, "error": error},
            )
        )

    async def emit_node_dispatched(self, run_id: str, node_id: str, endpoint: str) -> None:
        await self.publish(
            RunEvent(
                type=EventType.NODE_DISPATCHED,
                run_id=run_id,
                node_id=node_id,
                data={"endpoint": endpoint},
            )
        )

    async def emit_parallel_instances_created(
        self, run_id: str, splitter_id: str, instance_keys: list[str]
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.PARALLEL_INSTANCES_CREATED,
                run_id=run_id,
                node_id=splitter_id,
                data={"instances": instance_keys, "count": len(instance_keys)},
            )
        )

    async def emit_user_input_requested(
        self, run_id: str, node_id: str, prompt: str | None = None, input_data: Any = None
    ) -> None:
        await self.publish(
            RunEvent(
                type=EventType.USER_INPUT_REQUESTED,
                run_id=run_id,
                node_id=node_id,
                data={"prompt": prompt, "input": input_data},
            )
        )

    async def emit_run_finished(
        self, run_id: str, version_id: str, status: str, final_outputs: dict[str, Any]
    ) -> None:
        """Emit RUN_COMPLETED or RUN_FAILED depending on ``status``."""
        event_type = EventType.RUN_COMPLETED if status == "completed" else EventType.RUN_FAILED
        await self.publish(
            RunEvent(
                type=event_type,
                run_id=run_id,
                version_id=version_id,
                data={"status": str(status), "final_outputs": final_outputs},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if node_id:
            events = [e for e in events if e.node_id == node_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }
