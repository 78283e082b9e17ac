"""
Session Manager for agent-fleet.

This module handles:
- Session identity (``<prefix>-<n>`` ids allocated per project prefix)
- Spawning a workspace plus a supervised agent process for an issue
- Enumerating sessions with live runtime/agent enrichment
- Message injection, termination, cleanup and restoration

Session Lifecycle:
1. spawn() - Validate, reserve an id, create workspace and runtime, persist as "spawning"
2. list()/get() - Rebuild from metadata, enrich with liveness and activity
3. send() - Deliver text to the running agent
4. kill()/cleanup() - Destroy runtime and workspace, archive metadata
5. restore() - Relaunch a killed/terminated session in its workspace

The manager never polls; the lifecycle manager drives status changes and
reads through this class.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Optional

from agent_fleet.errors import (
    IssueFetchError,
    IssueNotFoundError,
    PluginNotFoundError,
    SessionNotFoundError,
    SessionNotRestorableError,
    UnknownProjectError,
    WorkspaceMissingError,
)
from agent_fleet.metadata import MetadataStore
from agent_fleet.models import (
    RESTORABLE_STATUSES,
    ActivityState,
    AgentLaunchConfig,
    CleanupError,
    CleanupResult,
    PRState,
    RuntimeCreateConfig,
    RuntimeHandle,
    Session,
    SessionStatus,
    coerce_status,
    parse_iso,
    parse_pr_url,
    to_iso,
    utc_now,
)
from agent_fleet.plugins import PluginRegistry, PluginSlot, supports
from agent_fleet.prompt_builder import build_prompt, format_issue_context

if TYPE_CHECKING:
    from agent_fleet.config import OrchestratorConfig, ProjectConfig
    from agent_fleet.logger import FleetLogger

logger = logging.getLogger(__name__)

SESSION_ENV_VAR = "AGENT_FLEET_SESSION"
PROJECT_ENV_VAR = "AGENT_FLEET_PROJECT"


class SessionManager:
    """
    Owns session identity, creation, enumeration, termination and restore.

    Composes the plugin registry (runtime, agent, workspace, tracker, scm)
    with the file-backed metadata store. Every public operation is async;
    backends are awaited directly.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        registry: PluginRegistry,
        metadata: Optional[MetadataStore] = None,
        logger: Optional[FleetLogger] = None,
    ) -> None:
        """
        Initialize the SessionManager.

        Args:
            config: OrchestratorConfig with projects, defaults and paths.
            registry: PluginRegistry resolving backends by slot and name.
            metadata: Metadata store; defaults to one over config.sessions_path.
            logger: Optional JSONL logger for recording operations.
        """
        self.config = config
        self.registry = registry
        self.metadata = metadata or MetadataStore(config.sessions_path)
        self.logger = logger

    def _log(
        self,
        message: str,
        level: str = "info",
        session_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log an entry if logger is configured."""
        if self.logger:
            self.logger.log(message, level=level, session_id=session_id, data=data, source="session")

    # ------------------------------------------------------------------
    # Plugin resolution
    # ------------------------------------------------------------------

    def _plugin_name(self, slot: PluginSlot, project: Optional[ProjectConfig]) -> str:
        override = getattr(project, slot.value, None) if project else None
        return override or getattr(self.config.defaults, slot.value)

    def _require(self, slot: PluginSlot, project: Optional[ProjectConfig], name: Optional[str] = None) -> Any:
        name = name or self._plugin_name(slot, project)
        plugin = self.registry.get(slot, name)
        if plugin is None:
            raise PluginNotFoundError(slot.value, name)
        return plugin

    def _optional(self, slot: PluginSlot, project: Optional[ProjectConfig]) -> Any:
        ref = getattr(project, slot.value, None) if project else None
        if ref is None:
            return None
        return self.registry.get(slot, ref.plugin)

    def _runtime_for(self, project: Optional[ProjectConfig], handle: Optional[RuntimeHandle]) -> Any:
        if handle and handle.runtime_name:
            runtime = self.registry.get(PluginSlot.RUNTIME, handle.runtime_name)
            if runtime is not None:
                return runtime
        return self.registry.get(PluginSlot.RUNTIME, self._plugin_name(PluginSlot.RUNTIME, project))

    def _agent_for(self, project: Optional[ProjectConfig], raw: dict[str, str]) -> Any:
        name = raw.get("agent") or self._plugin_name(PluginSlot.AGENT, project)
        return self.registry.get(PluginSlot.AGENT, name)

    # ------------------------------------------------------------------
    # Reconstruction
    # ------------------------------------------------------------------

    def _reserved_ids(self, prefix: str) -> int:
        pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
        highest = 0
        for session_id in (*self.metadata.list(), *self.metadata.archived_ids()):
            match = pattern.match(session_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest

    def next_session_id(self, project: ProjectConfig) -> str:
        """
        Propose ``<prefix>-<max+1>`` over active and archived records.

        Ids of killed sessions are never handed out again. The id is only
        claimed once spawn reserves its metadata record.
        """
        return f"{project.session_prefix}-{self._reserved_ids(project.session_prefix) + 1}"

    def _session_from_metadata(self, session_id: str, raw: dict[str, str]) -> Session:
        project = self.config.get_project(raw.get("project", ""))
        branch = raw.get("branch", "")
        created_at = parse_iso(raw.get("created_at")) or utc_now()
        return Session(
            id=session_id,
            project_id=raw.get("project", ""),
            status=coerce_status(raw.get("status")),
            activity=ActivityState.IDLE,
            branch=branch,
            issue_id=raw.get("issue") or None,
            pr=parse_pr_url(
                raw.get("pr", ""),
                branch=branch,
                base_branch=project.default_branch if project else "",
            ),
            workspace_path=raw.get("worktree") or None,
            runtime_handle=RuntimeHandle.from_json(raw.get("runtime_handle")),
            agent_info={"name": raw["agent"]} if raw.get("agent") else None,
            created_at=created_at,
            last_activity_at=parse_iso(raw.get("last_activity_at")) or created_at,
            restored_at=parse_iso(raw.get("restored_at")),
            metadata=dict(raw),
        )

    async def _enrich(self, session: Session) -> Session:
        """
        Overlay live signals on a persisted session.

        A dead runtime forces killed/exited (merged sessions keep their
        status). Otherwise the agent's activity is probed; a failing probe
        reads as idle.
        """
        handle = session.runtime_handle
        if handle is None:
            return session

        project = self.config.get_project(session.project_id)
        runtime = self._runtime_for(project, handle)
        if runtime is not None:
            try:
                alive = await runtime.is_alive(handle)
            except Exception as e:
                logger.warning("Liveness probe failed for %s: %s", session.id, e)
                alive = True
            if not alive:
                if session.status != SessionStatus.MERGED:
                    session.status = SessionStatus.KILLED
                session.activity = ActivityState.EXITED
                return session

        agent = self._agent_for(project, session.metadata)
        if agent is not None:
            try:
                session.activity = await agent.get_activity_state(handle)
            except Exception as e:
                logger.debug("Activity probe failed for %s: %s", session.id, e)
                session.activity = ActivityState.IDLE
        return session

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def spawn(
        self,
        project_id: str,
        issue_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Session:
        """
        Create a workspace and an agent process for a project (and issue).

        Validation (project, plugins, issue existence) happens before any
        workspace or process is created.

        Raises:
            UnknownProjectError: project_id is not configured.
            PluginNotFoundError: runtime/agent/workspace backend missing.
            IssueNotFoundError: the tracker says the issue does not exist.
            IssueFetchError: the tracker could not be queried.
        """
        project = self.config.get_project(project_id)
        if project is None:
            raise UnknownProjectError(project_id)

        runtime = self._require(PluginSlot.RUNTIME, project)
        agent = self._require(PluginSlot.AGENT, project)
        workspace = self._require(PluginSlot.WORKSPACE, project)
        tracker = self._optional(PluginSlot.TRACKER, project)

        issue_context = None
        if issue_id and tracker is not None:
            issue = await self._validate_issue(tracker, issue_id, project)
            issue_context = await self._issue_context(tracker, issue, issue_id, project)
            branch = tracker.branch_name(issue_id, project)
        elif issue_id:
            branch = f"feat/{issue_id}"
        else:
            branch = project.default_branch

        session_id = self._reserve_session_id(project, branch)
        try:
            workspace_info = await workspace.create(project, session_id, branch)
        except Exception:
            self.metadata.delete(session_id, archive=False)
            raise

        launch = AgentLaunchConfig(
            session_id=session_id,
            project_id=project_id,
            workspace_path=workspace_info.path,
            branch=workspace_info.branch or branch,
            issue_id=issue_id,
            prompt=build_prompt(project, project_id, issue_id, issue_context, prompt),
        )
        try:
            handle = await runtime.create(self._runtime_config(agent, launch, agent.get_launch_command(launch)))
        except Exception:
            await self._discard_workspace(workspace, workspace_info.path, session_id)
            self.metadata.delete(session_id, archive=False)
            raise

        now = utc_now()
        record = {
            "worktree": workspace_info.path,
            "branch": launch.branch,
            "status": SessionStatus.SPAWNING.value,
            "project": project_id,
            "issue": issue_id or "",
            "runtime_handle": handle.to_json(),
            "agent": self._plugin_name(PluginSlot.AGENT, project),
            "created_at": to_iso(now),
        }
        self.metadata.write(session_id, record)
        self._log("Session spawned", session_id=session_id, data={"project": project_id, "issue": issue_id})

        return self._session_from_metadata(session_id, self.metadata.read_raw(session_id) or record)

    def _reserve_session_id(self, project: ProjectConfig, branch: str) -> str:
        """Claim the next free id by creating its record before anything else exists."""
        while True:
            session_id = self.next_session_id(project)
            placeholder = {
                "project": project.id,
                "branch": branch,
                "status": SessionStatus.SPAWNING.value,
                "created_at": to_iso(utc_now()),
            }
            if self.metadata.reserve(session_id, placeholder):
                return session_id
            logger.debug("Session id %s taken concurrently, retrying", session_id)

    async def _validate_issue(self, tracker: Any, issue_id: str, project: ProjectConfig) -> Any:
        try:
            return await tracker.get_issue(issue_id, project)
        except IssueNotFoundError:
            raise
        except Exception as e:
            text = str(e).lower()
            if "not found" in text or "404" in text:
                raise IssueNotFoundError(issue_id) from e
            raise IssueFetchError(issue_id, str(e)) from e

    async def _issue_context(self, tracker: Any, issue: Any, issue_id: str, project: ProjectConfig) -> Optional[str]:
        if supports(tracker, "generate_prompt"):
            try:
                return await tracker.generate_prompt(issue_id, project)
            except Exception as e:
                logger.warning("Tracker prompt for %s failed, using issue fields: %s", issue_id, e)
        return format_issue_context(issue)

    def _runtime_config(self, agent: Any, launch: AgentLaunchConfig, command: str) -> RuntimeCreateConfig:
        environment = dict(agent.get_environment(launch) or {})
        environment[SESSION_ENV_VAR] = launch.session_id
        environment[PROJECT_ENV_VAR] = launch.project_id
        return RuntimeCreateConfig(
            session_id=launch.session_id,
            workspace_path=launch.workspace_path,
            launch_command=command,
            environment=environment,
        )

    async def _discard_workspace(self, workspace: Any, path: str, session_id: str) -> None:
        try:
            await workspace.destroy(path)
        except Exception as e:
            logger.warning("Could not remove workspace %s for %s: %s", path, session_id, e)

    async def list(self, project_id: Optional[str] = None) -> list[Session]:
        """All sessions with active metadata, optionally for one project."""
        sessions = []
        for session_id in self.metadata.list():
            raw = self.metadata.read_raw(session_id)
            if raw is None:
                continue
            if project_id and raw.get("project") != project_id:
                continue
            sessions.append(self._session_from_metadata(session_id, raw))
        return list(await asyncio.gather(*(self._enrich(s) for s in sessions)))

    async def get(self, session_id: str) -> Optional[Session]:
        """One enriched session, or None when no metadata exists."""
        try:
            raw = self.metadata.read_raw(session_id)
        except ValueError:
            return None
        if raw is None:
            return None
        return await self._enrich(self._session_from_metadata(session_id, raw))

    async def kill(self, session_id: str) -> None:
        """
        Terminate a session and archive its metadata.

        A failing runtime.destroy is tolerated (the process may already be
        gone); workspace removal always runs afterwards.

        Raises:
            SessionNotFoundError: No metadata for session_id.
        """
        raw = self.metadata.read_raw(session_id)
        if raw is None:
            raise SessionNotFoundError(session_id)

        project = self.config.get_project(raw.get("project", ""))
        handle = RuntimeHandle.from_json(raw.get("runtime_handle"))
        runtime = self._runtime_for(project, handle)
        if handle and runtime is not None:
            try:
                await runtime.destroy(handle)
            except Exception as e:
                logger.warning("Runtime destroy failed for %s (continuing): %s", session_id, e)

        path = raw.get("worktree")
        workspace = self.registry.get(PluginSlot.WORKSPACE, self._plugin_name(PluginSlot.WORKSPACE, project))
        if path and workspace is not None:
            await workspace.destroy(path)

        self.metadata.delete(session_id, archive=True)
        self._log("Session killed", session_id=session_id)

    async def cleanup(self, project_id: Optional[str] = None, dry_run: bool = False) -> CleanupResult:
        """
        Kill every session whose work is finished.

        A session is finished when its runtime is gone, its PR is merged, or
        (when the tracker supports it) its issue is completed. With dry_run
        the same classification is returned and nothing is destroyed.
        """
        result = CleanupResult()
        for session in await self.list(project_id):
            try:
                if not await self._is_finished(session):
                    result.skipped.append(session.id)
                    continue
                if not dry_run:
                    await self.kill(session.id)
                result.killed.append(session.id)
            except Exception as e:
                logger.warning("Cleanup failed for %s: %s", session.id, e)
                result.errors.append(CleanupError(session_id=session.id, error=str(e)))
        return result

    async def _is_finished(self, session: Session) -> bool:
        if session.activity == ActivityState.EXITED:
            return True

        project = self.config.get_project(session.project_id)
        scm = self._optional(PluginSlot.SCM, project)
        if session.pr and scm is not None:
            if await scm.get_pr_state(session.pr) == PRState.MERGED:
                return True

        tracker = self._optional(PluginSlot.TRACKER, project)
        if session.issue_id and tracker is not None and supports(tracker, "is_completed"):
            return bool(await tracker.is_completed(session.issue_id, project))
        return False

    async def send(self, session_id: str, message: str) -> None:
        """
        Deliver a message to the session's agent.

        Sessions persisted without a runtime handle are addressed by their id
        under the project's runtime.

        Raises:
            SessionNotFoundError: No metadata for session_id.
            PluginNotFoundError: The runtime backend is not registered.
        """
        raw = self.metadata.read_raw(session_id)
        if raw is None:
            raise SessionNotFoundError(session_id)

        project = self.config.get_project(raw.get("project", ""))
        handle = RuntimeHandle.from_json(raw.get("runtime_handle"))
        if handle is None:
            handle = RuntimeHandle(
                id=session_id,
                runtime_name=self._plugin_name(PluginSlot.RUNTIME, project),
                data={},
            )
        runtime = self._require(PluginSlot.RUNTIME, project, handle.runtime_name)
        await runtime.send_message(handle, message)

    async def restore(self, session_id: str) -> Session:
        """
        Relaunch a killed, terminated or errored session.

        The existing workspace is reused; a missing one is recreated from its
        branch when the SCM still has it. The agent's resume command is used
        when it offers one.

        Raises:
            SessionNotFoundError: No metadata for session_id.
            SessionNotRestorableError: Current status does not allow restore.
            WorkspaceMissingError: Neither workspace nor branch survives.
        """
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status not in RESTORABLE_STATUSES:
            raise SessionNotRestorableError(
                session_id, f"status is {session.status.value}"
            )

        project = self.config.get_project(session.project_id)
        if project is None:
            raise UnknownProjectError(session.project_id)

        runtime = self._require(PluginSlot.RUNTIME, project)
        agent = self._require(PluginSlot.AGENT, project, session.metadata.get("agent"))
        workspace = self._require(PluginSlot.WORKSPACE, project)

        path = session.workspace_path
        if not path or not await workspace.exists(path):
            await self._recreate_workspace(session, project, workspace)

        if session.runtime_handle:
            old_runtime = self._runtime_for(project, session.runtime_handle)
            if old_runtime is not None:
                try:
                    await old_runtime.destroy(session.runtime_handle)
                except Exception as e:
                    logger.debug("Old runtime for %s already gone: %s", session_id, e)

        launch = AgentLaunchConfig(
            session_id=session_id,
            project_id=project.id,
            workspace_path=path or "",
            branch=session.branch,
            issue_id=session.issue_id,
        )
        command = None
        if supports(agent, "get_restore_command"):
            command = await agent.get_restore_command(session, project)
        if not command:
            command = agent.get_launch_command(launch)

        handle = await runtime.create(self._runtime_config(agent, launch, command))
        self.metadata.update(session_id, {
            "status": SessionStatus.WORKING.value,
            "runtime_handle": handle.to_json(),
            "restored_at": to_iso(utc_now()),
        })
        self._log("Session restored", session_id=session_id)

        restored = self.metadata.read_raw(session_id) or {}
        return self._session_from_metadata(session_id, restored)

    async def _recreate_workspace(self, session: Session, project: ProjectConfig, workspace: Any) -> None:
        scm = self._optional(PluginSlot.SCM, project)
        path = session.workspace_path
        if not path or not session.branch or scm is None:
            raise WorkspaceMissingError(session.id, path)
        if not await scm.branch_exists(session.branch, project):
            raise WorkspaceMissingError(session.id, path)
        await workspace.restore(path, project.path, session.branch)
