"""
Event stream for agent-fleet.

Every status transition and reaction outcome becomes an OrchestratorEvent.
Events are:
- Routed by priority to notifiers (by the lifecycle manager)
- Published to in-process subscribers through the EventBus
- Appended to a JSONL EventLog for later inspection
"""

from agent_fleet.events.types import (
    EventPriority,
    EventType,
    OrchestratorEvent,
    create_event,
)
from agent_fleet.events.bus import EventBus
from agent_fleet.events.persistence import EventLog

__all__ = [
    "EventPriority",
    "EventType",
    "OrchestratorEvent",
    "create_event",
    "EventBus",
    "EventLog",
]
