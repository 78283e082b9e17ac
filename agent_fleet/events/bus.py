"""
Event bus for the agent-fleet event stream.

Lightweight in-process bus routing OrchestratorEvents to subscribers such as
dashboards, metrics collectors or extra loggers. Independent of notifier
dispatch: every event is published, whatever its priority.
"""

from __future__ import annotations

import logging
from typing import Callable

from agent_fleet.events.types import EventType, OrchestratorEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[OrchestratorEvent], None]


class EventBus:
    """Lightweight event bus for routing orchestrator events."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to a specific event type."""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events (for logging, dashboards)."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Unsubscribe from event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    def emit(self, event: OrchestratorEvent) -> None:
        """Deliver an event to global subscribers, then type subscribers."""
        handlers = list(self._global_handlers) + list(self._handlers.get(event.type, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # Handlers must not break the bus
                logger.exception("Event handler failed for %s", event.type.value)
