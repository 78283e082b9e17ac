"""
Event types for the agent-fleet event stream.

Defines the OrchestratorEvent dataclass, the EventType enum covering every
status transition and reaction outcome, and the four notification priority
tiers.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """All event types emitted by the lifecycle manager."""

    # Session lifecycle
    SESSION_WORKING = "session.working"
    SESSION_NEEDS_INPUT = "session.needs_input"
    SESSION_STUCK = "session.stuck"
    SESSION_ERRORED = "session.errored"
    SESSION_KILLED = "session.killed"
    SESSION_TERMINATED = "session.terminated"

    # PR flow
    PR_CREATED = "pr.created"
    CI_FAILING = "ci.failing"
    REVIEW_PENDING = "review.pending"
    REVIEW_CHANGES_REQUESTED = "review.changes_requested"
    REVIEW_APPROVED = "review.approved"
    MERGE_READY = "merge.ready"
    MERGE_COMPLETED = "merge.completed"

    # Reactions
    REACTION_TRIGGERED = "reaction.triggered"
    REACTION_ESCALATED = "reaction.escalated"

    # Fleet-wide
    SUMMARY_ALL_COMPLETE = "summary.all_complete"


class EventPriority(str, Enum):
    """Notification tiers, most pressing first."""
    URGENT = "urgent"
    ACTION = "action"
    WARNING = "warning"
    INFO = "info"


def _new_event_id() -> str:
    return str(uuid.uuid4())[:8]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OrchestratorEvent:
    """A single immutable event in the orchestrator stream."""

    type: EventType
    priority: EventPriority
    session_id: str
    project_id: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_event_id)
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority.value,
            "session_id": self.session_id,
            "project_id": self.project_id,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "message": self.message,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestratorEvent:
        """Create from dict."""
        timestamp = datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            id=data["id"],
            type=EventType(data["type"]),
            priority=EventPriority(data["priority"]),
            session_id=data.get("session_id", ""),
            project_id=data.get("project_id", ""),
            timestamp=timestamp,
            message=data.get("message", ""),
            data=dict(data.get("data") or {}),
        )

    def __str__(self) -> str:
        return f"[{self.priority.value}] {self.type.value} session={self.session_id}: {self.message}"


def create_event(
    event_type: EventType,
    session_id: str,
    project_id: str,
    message: str,
    priority: EventPriority = EventPriority.INFO,
    data: Optional[dict[str, Any]] = None,
) -> OrchestratorEvent:
    """Build an event with a fresh id and timestamp."""
    return OrchestratorEvent(
        type=event_type,
        priority=priority,
        session_id=session_id,
        project_id=project_id,
        message=message,
        data=dict(data or {}),
    )
