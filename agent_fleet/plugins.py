"""
Capability registry for agent-fleet.

Concrete backends (a tmux runtime, a GitHub SCM, a Slack notifier...) live
outside this package. This module defines:
- The six capability slots and the Protocol each backend satisfies
- PluginRegistry, a lookup of backends by (slot, name)
- Loading backend modules named in the configuration

A plugin module exposes ``MANIFEST = {"name": ..., "slot": ...}`` and a
``create(options)`` factory returning the backend instance.
"""

from __future__ import annotations

import importlib
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from agent_fleet.config import ConfigError, OrchestratorConfig
from agent_fleet.models import (
    ActivityState,
    AgentLaunchConfig,
    CIStatus,
    Issue,
    MergeReadiness,
    PRInfo,
    PRState,
    ReviewDecision,
    RuntimeCreateConfig,
    RuntimeHandle,
    WorkspaceInfo,
)

logger = logging.getLogger(__name__)


class PluginSlot(str, Enum):
    RUNTIME = "runtime"
    AGENT = "agent"
    WORKSPACE = "workspace"
    TRACKER = "tracker"
    SCM = "scm"
    NOTIFIER = "notifier"


@runtime_checkable
class Runtime(Protocol):
    """Process / terminal supervisor."""
    name: str

    async def create(self, config: RuntimeCreateConfig) -> RuntimeHandle: ...
    async def destroy(self, handle: RuntimeHandle) -> None: ...
    async def send_message(self, handle: RuntimeHandle, message: str) -> None: ...
    async def get_output(self, handle: RuntimeHandle, lines: int = 50) -> str: ...
    async def is_alive(self, handle: RuntimeHandle) -> bool: ...


@runtime_checkable
class Agent(Protocol):
    """
    Coding-agent adapter.

    May also provide ``async get_restore_command(session, project) ->
    Optional[str]`` to resume a previous conversation.
    """
    name: str

    def get_launch_command(self, config: AgentLaunchConfig) -> str: ...
    def get_environment(self, config: AgentLaunchConfig) -> dict[str, str]: ...
    def detect_activity(self, output: str) -> ActivityState: ...
    async def get_activity_state(self, handle: RuntimeHandle) -> ActivityState: ...
    async def is_process_running(self, handle: RuntimeHandle) -> bool: ...


@runtime_checkable
class Workspace(Protocol):
    """Checkout / worktree manager."""
    name: str

    async def create(self, project: Any, session_id: str, branch: str) -> WorkspaceInfo: ...
    async def destroy(self, path: str) -> None: ...
    async def exists(self, path: str) -> bool: ...
    async def restore(self, path: str, repo_path: str, branch: str) -> None: ...


@runtime_checkable
class Tracker(Protocol):
    """
    Issue tracker.

    May also provide ``async is_completed(issue_id, project) -> bool`` and
    ``async generate_prompt(issue_id, project) -> str`` for launch prompts.
    """
    name: str

    async def get_issue(self, issue_id: str, project: Any) -> Issue: ...
    def branch_name(self, issue_id: str, project: Any) -> str: ...


@runtime_checkable
class SCM(Protocol):
    """
    Source-control host.

    May also provide ``async detect_pr(session, project) -> Optional[PRInfo]``
    to find a PR opened from the session's branch.
    """
    name: str

    async def get_pr_state(self, pr: PRInfo) -> PRState: ...
    async def get_ci_summary(self, pr: PRInfo) -> CIStatus: ...
    async def get_review_decision(self, pr: PRInfo) -> ReviewDecision: ...
    async def get_mergeability(self, pr: PRInfo) -> MergeReadiness: ...
    async def branch_exists(self, branch: str, project: Any) -> bool: ...
    async def merge_pr(self, pr: PRInfo) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    """Human notification channel."""
    name: str

    async def notify(self, event: Any) -> None: ...


class PluginRegistry:
    """Name-keyed lookup of capability backends."""

    def __init__(self) -> None:
        self._plugins: dict[tuple[str, str], Any] = {}

    @staticmethod
    def _slot(slot: PluginSlot | str) -> str:
        return slot.value if isinstance(slot, PluginSlot) else PluginSlot(slot).value

    def register(self, slot: PluginSlot | str, name: str, plugin: Any) -> None:
        """Register a backend; a later registration under the same key wins."""
        key = (self._slot(slot), name)
        if key in self._plugins:
            logger.debug("Replacing %s plugin '%s'", key[0], name)
        self._plugins[key] = plugin

    def get(self, slot: PluginSlot | str, name: Optional[str]) -> Optional[Any]:
        """Return the backend for (slot, name), or None."""
        if not name:
            return None
        return self._plugins.get((self._slot(slot), name))

    def list(self, slot: Optional[PluginSlot | str] = None) -> list[tuple[str, str]]:
        """Registered (slot, name) pairs, optionally limited to one slot."""
        wanted = self._slot(slot) if slot is not None else None
        return sorted(key for key in self._plugins if wanted is None or key[0] == wanted)

    def load_module(self, module_path: str, options: Optional[dict[str, Any]] = None) -> tuple[str, str]:
        """
        Import a plugin module and register the backend it creates.

        Raises:
            ConfigError: If the module cannot be imported or lacks
                MANIFEST / create().
        """
        slot, name, factory = _import_plugin(module_path)
        self.register(slot, name, factory(options or {}))
        return slot.value, name

    def load_from_config(self, config: OrchestratorConfig) -> list[tuple[str, str]]:
        """
        Load every plugin module listed under ``plugins``.

        Notifier options come from the ``notifiers`` section; tracker/scm
        options from the first project that references the plugin.
        """
        loaded = []
        for module_path in config.plugins:
            slot, name, factory = _import_plugin(module_path)
            self.register(slot, name, factory(_plugin_options(config, slot, name)))
            logger.debug("Loaded plugin %s:%s from %s", slot.value, name, module_path)
            loaded.append((slot.value, name))
        return loaded


def _import_plugin(module_path: str) -> tuple[PluginSlot, str, Callable[[dict[str, Any]], Any]]:
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigError(f"Cannot import plugin module {module_path}: {e}") from e

    manifest = getattr(module, "MANIFEST", None)
    factory = getattr(module, "create", None)
    if not isinstance(manifest, dict) or not manifest.get("name") or not manifest.get("slot"):
        raise ConfigError(f"Plugin module {module_path} has no valid MANIFEST")
    if not callable(factory):
        raise ConfigError(f"Plugin module {module_path} has no create() function")

    try:
        slot = PluginSlot(manifest["slot"])
    except ValueError as e:
        raise ConfigError(
            f"Plugin module {module_path} declares unknown slot {manifest['slot']!r}"
        ) from e
    return slot, str(manifest["name"]), factory


def _plugin_options(config: OrchestratorConfig, slot: PluginSlot, name: str) -> dict[str, Any]:
    if slot == PluginSlot.NOTIFIER:
        return dict(config.notifiers.get(name, {}) or {})
    if slot in (PluginSlot.TRACKER, PluginSlot.SCM):
        for project in config.projects.values():
            ref = getattr(project, slot.value)
            if ref is not None and ref.plugin == name:
                return dict(ref.options)
    return {}


def supports(plugin: Any, method: str) -> bool:
    """True when an optional capability method is implemented."""
    return callable(getattr(plugin, method, None))
