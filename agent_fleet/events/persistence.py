"""
Event persistence for the agent-fleet event stream.

Append-only JSONL log of every orchestrator event, greppable with jq.
Logging is best-effort: write failures are logged and never raised, and
corrupt lines are skipped on read.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

from agent_fleet.events.types import EventType, OrchestratorEvent
from agent_fleet.utils.fs import FileSystemError, append_line

logger = logging.getLogger(__name__)


class EventLog:
    """Persist events to a single JSONL file."""

    def __init__(self, events_dir: Union[str, Path], file_name: str = "events.jsonl") -> None:
        """
        Initialize event persistence.

        Args:
            events_dir: Directory holding the event log (created on first write).
            file_name: Name of the JSONL file inside events_dir.
        """
        self._events_dir = Path(events_dir)
        self.path = self._events_dir / file_name

    def append(self, event: OrchestratorEvent) -> None:
        """Append an event to the log."""
        try:
            append_line(self.path, json.dumps(event.to_dict(), default=str))
        except FileSystemError as e:
            logger.warning("Could not append event %s: %s", event.id, e)

    def read_recent(
        self,
        limit: int = 100,
        session_id: Optional[str] = None,
        event_types: Optional[list[EventType]] = None,
    ) -> list[OrchestratorEvent]:
        """
        Return the most recent events, oldest first.

        Args:
            limit: Maximum number of events to return. 0 or less means all.
            session_id: Filter by session ID.
            event_types: Filter by event types.
        """
        if not self.path.exists():
            return []

        events: list[OrchestratorEvent] = []
        with self.path.open(encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = OrchestratorEvent.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError):
                    continue

                if session_id and event.session_id != session_id:
                    continue
                if event_types and event.type not in event_types:
                    continue

                events.append(event)

        if limit > 0:
            return events[-limit:]
        return events
