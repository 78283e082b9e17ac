"""
Exception taxonomy for agent-fleet.

Three families, so callers can branch on type rather than message text:

- Validation errors (unknown project, unknown session, missing plugin) are
  raised before anything is created or destroyed.
- Tracker errors distinguish "the issue does not exist" from "we could not
  reach the tracker".
- Domain refusals from restore(): "not allowed right now" versus "nothing
  left to restore from".
"""

from __future__ import annotations

from typing import Optional


class FleetError(Exception):
    """Base class for all agent-fleet errors."""
    pass


class UnknownProjectError(FleetError):
    """Raised when a project id is not present in the configuration."""

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Unknown project: {project_id}")
        self.project_id = project_id


class SessionNotFoundError(FleetError):
    """Raised when no metadata exists for a session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class PluginNotFoundError(FleetError):
    """Raised when a required capability plugin is not registered."""

    def __init__(self, slot: str, name: str) -> None:
        super().__init__(f"{slot.capitalize()} plugin '{name}' not found")
        self.slot = slot
        self.name = name


class IssueNotFoundError(FleetError):
    """The tracker answered, and the issue does not exist."""

    def __init__(self, issue_id: str, detail: Optional[str] = None) -> None:
        message = f"Issue {issue_id} does not exist in tracker"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.issue_id = issue_id


class IssueFetchError(FleetError):
    """The tracker could not be queried (auth, network, rate limit...)."""

    def __init__(self, issue_id: str, detail: str) -> None:
        super().__init__(f"Failed to fetch issue {issue_id}: {detail}")
        self.issue_id = issue_id


class SessionNotRestorableError(FleetError):
    """The session exists but its current status does not allow restore."""

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(f"Session {session_id} cannot be restored: {reason}")
        self.session_id = session_id
        self.reason = reason


class WorkspaceMissingError(FleetError):
    """Neither the workspace nor its branch survives; nothing to restore from."""

    def __init__(self, session_id: str, workspace_path: Optional[str]) -> None:
        super().__init__(
            f"Workspace for session {session_id} is missing "
            f"({workspace_path or 'no path recorded'}) and its branch no longer exists"
        )
        self.session_id = session_id
        self.workspace_path = workspace_path
