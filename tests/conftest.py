"""Shared fixtures: a one-project config and mock backends for every plugin slot."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from typer.testing import CliRunner

from agent_fleet.config import (
    DefaultPlugins,
    NotificationRouting,
    OrchestratorConfig,
    PluginRef,
    ProjectConfig,
)
from agent_fleet.metadata import MetadataStore
from agent_fleet.models import (
    ActivityState,
    CIStatus,
    Issue,
    MergeReadiness,
    PRState,
    ReviewDecision,
    RuntimeHandle,
    Session,
    SessionStatus,
    WorkspaceInfo,
    parse_pr_url,
)
from agent_fleet.plugins import PluginRegistry

PR_URL = "https://github.com/org/my-app/pull/42"


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    """Config with one project (prefix "app") and mock default plugins."""
    return OrchestratorConfig(
        data_dir=str(tmp_path / "data"),
        action_timeout_seconds=2,
        defaults=DefaultPlugins(
            runtime="mock",
            agent="mock-agent",
            workspace="mock-ws",
            notifiers=["desktop"],
        ),
        notification_routing=NotificationRouting(
            urgent=["desktop"],
            action=["desktop"],
            warning=[],
            info=[],
        ),
        projects={
            "my-app": ProjectConfig(
                id="my-app",
                name="My App",
                repo="org/my-app",
                path=str(tmp_path / "my-app"),
                default_branch="main",
                session_prefix="app",
            ),
        },
    )


@pytest.fixture
def handle() -> RuntimeHandle:
    return RuntimeHandle(id="rt-1", runtime_name="mock", data={"pane": "%1"})


@pytest.fixture
def runtime(handle):
    """Runtime whose process is alive and printing output."""
    mock = Mock(spec=["name", "create", "destroy", "send_message", "get_output", "is_alive"])
    mock.name = "mock"
    mock.create = AsyncMock(return_value=handle)
    mock.destroy = AsyncMock(return_value=None)
    mock.send_message = AsyncMock(return_value=None)
    mock.get_output = AsyncMock(return_value="$ agent is thinking...")
    mock.is_alive = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def agent():
    """Agent that reports itself active. No resume command."""
    mock = Mock(spec=[
        "name",
        "get_launch_command",
        "get_environment",
        "detect_activity",
        "get_activity_state",
        "is_process_running",
    ])
    mock.name = "mock-agent"
    mock.get_launch_command = MagicMock(return_value="agent --start")
    mock.get_environment = MagicMock(return_value={"AGENT_MODE": "auto"})
    mock.detect_activity = MagicMock(return_value=ActivityState.ACTIVE)
    mock.get_activity_state = AsyncMock(return_value=ActivityState.ACTIVE)
    mock.is_process_running = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def workspace():
    """Workspace creating /tmp/mock-ws/<session> checkouts."""
    mock = Mock(spec=["name", "create", "destroy", "exists", "restore"])
    mock.name = "mock-ws"

    async def create(project, session_id, branch):
        return WorkspaceInfo(
            path=f"/tmp/mock-ws/{session_id}",
            branch=branch,
            session_id=session_id,
            project_id=project.id,
        )

    mock.create = AsyncMock(side_effect=create)
    mock.destroy = AsyncMock(return_value=None)
    mock.exists = AsyncMock(return_value=True)
    mock.restore = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def scm():
    """SCM reporting an open PR with no CI and no review."""
    mock = Mock(spec=[
        "name",
        "get_pr_state",
        "get_ci_summary",
        "get_review_decision",
        "get_mergeability",
        "branch_exists",
        "merge_pr",
    ])
    mock.name = "github"
    mock.get_pr_state = AsyncMock(return_value=PRState.OPEN)
    mock.get_ci_summary = AsyncMock(return_value=CIStatus.NONE)
    mock.get_review_decision = AsyncMock(return_value=ReviewDecision.NONE)
    mock.get_mergeability = AsyncMock(return_value=MergeReadiness(
        mergeable=False, ci_passing=False, approved=False, no_conflicts=True,
    ))
    mock.branch_exists = AsyncMock(return_value=True)
    mock.merge_pr = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def tracker():
    """Tracker that finds every issue and names branches custom/<id>."""
    mock = Mock(spec=["name", "get_issue", "branch_name"])
    mock.name = "linear"
    mock.get_issue = AsyncMock(return_value=Issue(
        id="INT-1",
        title="Fix login redirect",
        description="Users land on a blank page after login.",
        url="https://linear.app/org/issue/INT-1",
    ))
    mock.branch_name = MagicMock(side_effect=lambda issue_id, project: f"custom/{issue_id}")
    return mock


@pytest.fixture
def notifier():
    mock = Mock(spec=["name", "notify"])
    mock.name = "desktop"
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def registry(runtime, agent, workspace, notifier) -> PluginRegistry:
    """Registry with runtime, agent, workspace and the desktop notifier."""
    reg = PluginRegistry()
    reg.register("runtime", "mock", runtime)
    reg.register("agent", "mock-agent", agent)
    reg.register("workspace", "mock-ws", workspace)
    reg.register("notifier", "desktop", notifier)
    return reg


@pytest.fixture
def use_scm(config, registry, scm):
    """Attach the mock SCM to my-app."""
    config.projects["my-app"].scm = PluginRef(plugin="github")
    registry.register("scm", "github", scm)
    return scm


@pytest.fixture
def use_tracker(config, registry, tracker):
    """Attach the mock tracker to my-app."""
    config.projects["my-app"].tracker = PluginRef(plugin="linear")
    registry.register("tracker", "linear", tracker)
    return tracker


@pytest.fixture
def metadata(config) -> MetadataStore:
    return MetadataStore(config.sessions_path)


@pytest.fixture
def write_session(metadata, handle):
    """Persist a metadata record; runtime_handle defaults to the fixture handle."""

    def _write(session_id: str, with_handle: bool = True, **fields: str) -> dict:
        record = {
            "worktree": "/tmp/mock-ws/" + session_id,
            "branch": "main",
            "status": "working",
            "project": "my-app",
        }
        if with_handle:
            record["runtime_handle"] = json.dumps(handle.to_dict())
        record.update(fields)
        metadata.write(session_id, record)
        return record

    return _write


@pytest.fixture
def make_session(handle):
    """Build an in-memory Session the way SessionManager.get returns it."""

    def _make(
        session_id: str = "app-1",
        status: SessionStatus = SessionStatus.SPAWNING,
        pr: bool = False,
        **kwargs,
    ) -> Session:
        return Session(
            id=session_id,
            project_id=kwargs.pop("project_id", "my-app"),
            status=status,
            activity=kwargs.pop("activity", ActivityState.ACTIVE),
            branch=kwargs.pop("branch", "main"),
            pr=parse_pr_url(PR_URL, branch="feat/x", base_branch="main") if pr else None,
            workspace_path=kwargs.pop("workspace_path", "/tmp/mock-ws/" + session_id),
            runtime_handle=kwargs.pop("runtime_handle", handle),
            metadata=kwargs.pop("metadata", {"agent": "mock-agent"}),
            **kwargs,
        )

    return _make


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
