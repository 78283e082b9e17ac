"""
Core data models for agent-fleet.

This module defines the data structures shared by the session and lifecycle
managers:
- Enums for session status, agent activity and the PR/CI/review signals
- Dataclasses for sessions, runtime handles and PR references
- Request/response shapes exchanged with capability plugins
- JSON serialization helpers for everything persisted to metadata
"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class SessionStatus(str, Enum):
    """
    Lifecycle status of an agent session.

    Values are the strings persisted in metadata files.
    """
    # Startup
    SPAWNING = "spawning"            # Workspace and process being created
    WORKING = "working"              # Agent running under supervision

    # Needs a human
    STUCK = "stuck"                  # No progress detected
    NEEDS_INPUT = "needs_input"      # Agent is waiting on a prompt
    ERRORED = "errored"              # Agent reported a fatal error

    # PR flow
    PR_OPEN = "pr_open"
    REVIEW_PENDING = "review_pending"
    CHANGES_REQUESTED = "changes_requested"
    CI_FAILED = "ci_failed"
    APPROVED = "approved"
    MERGEABLE = "mergeable"

    # End states
    MERGED = "merged"
    KILLED = "killed"
    TERMINATED = "terminated"


class ActivityState(str, Enum):
    """What the agent process is doing right now."""
    ACTIVE = "active"
    IDLE = "idle"
    WAITING_INPUT = "waiting_input"
    BLOCKED = "blocked"
    EXITED = "exited"


class PRState(str, Enum):
    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class CIStatus(str, Enum):
    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"
    NONE = "none"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    PENDING = "pending"
    NONE = "none"


# No further automatic transition happens from these.
TERMINAL_STATUSES = frozenset({SessionStatus.MERGED, SessionStatus.KILLED})

# restore() is only allowed from these.
RESTORABLE_STATUSES = frozenset({
    SessionStatus.KILLED,
    SessionStatus.TERMINATED,
    SessionStatus.ERRORED,
})


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime the way metadata files store it."""
    return value.isoformat().replace("+00:00", "Z")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, returning None for missing or garbled values."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class RuntimeHandle:
    """
    Opaque reference to a supervised process owned by a runtime plugin.

    Only the runtime named by ``runtime_name`` interprets ``data``.
    """
    id: str
    runtime_name: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuntimeHandle:
        return cls(
            id=str(data["id"]),
            runtime_name=str(data.get("runtime_name", "")),
            data=dict(data.get("data") or {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional[RuntimeHandle]:
        """Decode a handle stored in metadata. Corrupt values decode to None."""
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or "id" not in data:
            return None
        return cls.from_dict(data)


@dataclass
class PRInfo:
    """Structured reference to a pull request."""
    number: int
    url: str
    title: str = ""
    owner: str = ""
    repo: str = ""
    branch: str = ""
    base_branch: str = ""
    is_draft: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_PR_URL_RE = re.compile(r"^https?://[^/]+/([^/]+)/([^/]+)/pull/(\d+)")
_TRAILING_NUMBER_RE = re.compile(r"(\d+)/?$")


def parse_pr_url(url: str, branch: str = "", base_branch: str = "") -> Optional[PRInfo]:
    """
    Build a PRInfo from a stored PR URL.

    Understands ``https://<host>/<owner>/<repo>/pull/<n>``. Any other URL
    ending in a number still yields a reference with that number.
    """
    if not url:
        return None
    match = _PR_URL_RE.match(url.strip())
    if match:
        owner, repo, number = match.groups()
        return PRInfo(
            number=int(number),
            url=url,
            owner=owner,
            repo=repo,
            branch=branch,
            base_branch=base_branch,
        )
    match = _TRAILING_NUMBER_RE.search(url.strip())
    if match:
        return PRInfo(
            number=int(match.group(1)),
            url=url,
            branch=branch,
            base_branch=base_branch,
        )
    return None


@dataclass
class MergeReadiness:
    """Answer from SCM.get_mergeability."""
    mergeable: bool
    ci_passing: bool
    approved: bool
    no_conflicts: bool
    blockers: list[str] = field(default_factory=list)


@dataclass
class Issue:
    """An issue as returned by a tracker plugin."""
    id: str
    title: str = ""
    description: str = ""
    url: str = ""
    state: str = "open"
    labels: list[str] = field(default_factory=list)


@dataclass
class WorkspaceInfo:
    """Result of Workspace.create."""
    path: str
    branch: str
    session_id: str
    project_id: str


@dataclass
class AgentLaunchConfig:
    """Everything an agent plugin needs to build its launch command."""
    session_id: str
    project_id: str
    workspace_path: str
    branch: str
    issue_id: Optional[str] = None
    prompt: Optional[str] = None


@dataclass
class RuntimeCreateConfig:
    """Everything a runtime plugin needs to start a supervised process."""
    session_id: str
    workspace_path: str
    launch_command: str
    environment: dict[str, str] = field(default_factory=dict)


@dataclass
class Session:
    """
    A live view of one agent session.

    Rebuilt from the persisted metadata record on every read and enriched
    with runtime liveness and agent activity.
    """
    id: str
    project_id: str
    status: SessionStatus
    activity: ActivityState = ActivityState.IDLE
    branch: str = ""
    issue_id: Optional[str] = None
    pr: Optional[PRInfo] = None
    workspace_path: Optional[str] = None
    runtime_handle: Optional[RuntimeHandle] = None
    agent_info: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
    last_activity_at: datetime = field(default_factory=utc_now)
    restored_at: Optional[datetime] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "activity": self.activity.value,
            "branch": self.branch,
            "issue_id": self.issue_id,
            "pr": self.pr.to_dict() if self.pr else None,
            "workspace_path": self.workspace_path,
            "runtime_handle": self.runtime_handle.to_dict() if self.runtime_handle else None,
            "agent_info": self.agent_info,
            "created_at": to_iso(self.created_at),
            "last_activity_at": to_iso(self.last_activity_at),
            "restored_at": to_iso(self.restored_at) if self.restored_at else None,
            "metadata": dict(self.metadata),
        }


@dataclass
class CleanupError:
    session_id: str
    error: str


@dataclass
class CleanupResult:
    """Outcome of SessionManager.cleanup. Same shape for dry runs."""
    killed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[CleanupError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def coerce_status(value: Optional[str]) -> SessionStatus:
    """Parse a persisted status string; unknown values read as spawning."""
    try:
        return SessionStatus(value)
    except ValueError:
        return SessionStatus.SPAWNING
