"""
Prompt Builder for agent-fleet.

Composes the launch prompt handed to an agent in three layers:
1. BASE_AGENT_PROMPT - fixed instructions about the managed session
2. Project context - repository, branch, task, issue details, reaction hints
3. Project rules - inline ``agent_rules`` and/or ``agent_rules_file`` content

The caller's own prompt is appended last. build_prompt() returns None when
there is no issue, no rules and no explicit prompt, so bare launches keep
the agent's default behaviour.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from agent_fleet.utils.fs import FileSystemError, read_file

if TYPE_CHECKING:
    from agent_fleet.config import ProjectConfig

logger = logging.getLogger(__name__)

BASE_AGENT_PROMPT = """You are a coding agent running in a session managed by agent-fleet.

## Session Lifecycle
- Focus on the assigned task inside this workspace.
- When the work is done, push your branch and open a PR. CI and review routing are handled for you.
- If CI fails you will be sent the failures. Fix them and push again.
- If reviewers request changes you will be sent their comments. Address each one and push fixes.

## Git Workflow
- Work on the session's feature branch, never directly on the default branch.
- Use conventional commit messages (feat:, fix:, chore:).
- Keep each PR focused on one issue.

## PR Practices
- Give the PR a clear title and a description of what changed and why.
- Link the issue in the description so it closes on merge.
- Reply to every review comment.

## Environment
- `AGENT_FLEET_SESSION` holds this session's id.
- `AGENT_FLEET_PROJECT` holds the project id."""

# Rules files longer than this are truncated.
MAX_RULES_CHARS = 15000


def format_issue_context(issue: Any) -> Optional[str]:
    """Render a tracker issue as markdown, or None when it carries nothing useful."""
    if issue is None:
        return None
    title = getattr(issue, "title", "")
    description = getattr(issue, "description", "")
    url = getattr(issue, "url", "")
    labels = getattr(issue, "labels", None) or []

    lines = []
    if title:
        lines.append(f"Title: {title}")
    if url:
        lines.append(f"URL: {url}")
    if labels:
        lines.append(f"Labels: {', '.join(labels)}")
    if description:
        lines.append("")
        lines.append(description)
    return "\n".join(lines).strip() or None


def _config_layer(
    project: ProjectConfig,
    project_id: str,
    issue_id: Optional[str],
    issue_context: Optional[str],
) -> str:
    lines = [
        "## Project Context",
        f"- Project: {project.name or project_id}",
        f"- Repository: {project.repo}",
        f"- Default branch: {project.default_branch}",
    ]
    if project.tracker is not None:
        lines.append(f"- Tracker: {project.tracker.plugin}")

    if issue_id:
        lines.append("\n## Task")
        lines.append(f"Work on issue: {issue_id}")
        lines.append(
            f"Name your branch so it links to the issue tracker (e.g. feat/{issue_id})."
        )

    if issue_context:
        lines.append("\n## Issue Details")
        lines.append(issue_context)

    hints = [
        f"- {key}: handled automatically (you will receive instructions)"
        for key, reaction in project.reactions.items()
        if reaction.enabled and reaction.action == "send-to-agent"
    ]
    if hints:
        lines.append("\n## Automated Reactions")
        lines.append("These events are handled for you:")
        lines.extend(hints)

    return "\n".join(lines)


def read_project_rules(project: ProjectConfig) -> Optional[str]:
    """
    Collect the project's agent rules.

    Inline rules come first, then the rules file resolved against the project
    path. An unreadable rules file is logged and skipped.
    """
    parts = []
    if project.agent_rules and project.agent_rules.strip():
        parts.append(project.agent_rules.strip())

    if project.agent_rules_file:
        path = Path(project.path) / project.agent_rules_file
        try:
            content = read_file(path).strip()
        except (FileSystemError, OSError) as e:
            logger.warning("Could not read agent rules file %s: %s", path, e)
            content = ""
        if len(content) > MAX_RULES_CHARS:
            content = content[:MAX_RULES_CHARS] + "\n\n... (truncated)"
        if content:
            parts.append(content)

    return "\n\n".join(parts) or None


def build_prompt(
    project: ProjectConfig,
    project_id: str,
    issue_id: Optional[str] = None,
    issue_context: Optional[str] = None,
    user_prompt: Optional[str] = None,
) -> Optional[str]:
    """
    Compose the launch prompt for a session.

    Args:
        project: Project the session belongs to.
        project_id: Key of the project in the configuration.
        issue_id: Issue the session works on, if any.
        issue_context: Pre-rendered issue details from the tracker.
        user_prompt: Caller-supplied instructions, appended last.

    Returns:
        The prompt sections joined by blank lines, or None when there is no
        issue, no project rules and no user prompt.
    """
    rules = read_project_rules(project)
    if not issue_id and not rules and not user_prompt:
        return None

    sections = [BASE_AGENT_PROMPT, _config_layer(project, project_id, issue_id, issue_context)]
    if rules:
        sections.append(f"## Project Rules\n{rules}")
    if user_prompt:
        sections.append(f"## Additional Instructions\n{user_prompt}")
    return "\n\n".join(sections)
