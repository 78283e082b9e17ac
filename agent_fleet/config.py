"""
Configuration loading and validation for agent-fleet.

This module handles:
- Locating agent-fleet.yaml (explicit path, AGENT_FLEET_CONFIG, cwd upwards)
- Environment variable resolution (${VAR} syntax)
- Validation of required project fields
- Built-in default reactions, merged under user reactions field-by-field
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from agent_fleet.errors import FleetError

CONFIG_ENV_VAR = "AGENT_FLEET_CONFIG"
CONFIG_FILE_NAMES = ("agent-fleet.yaml", "agent-fleet.yml")

REACTION_ACTIONS = ("send-to-agent", "auto-merge", "notify")
PRIORITY_TIERS = ("urgent", "action", "warning", "info")


class ConfigError(FleetError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class DefaultPlugins:
    """Plugin names used when a project does not override them."""
    runtime: str = "tmux"
    agent: str = "claude-code"
    workspace: str = "worktree"
    notifiers: list[str] = field(default_factory=list)


@dataclass
class PluginRef:
    """Reference to an optional per-project plugin (tracker, scm)."""
    plugin: str
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReactionConfig:
    """
    Automated reaction to a status transition.

    Every field is optional so a project-level entry can override a global
    entry one field at a time. ``auto`` left unset means enabled.
    """
    auto: Optional[bool] = None
    action: Optional[str] = None               # send-to-agent | auto-merge | notify
    message: Optional[str] = None              # Text for send-to-agent
    retries: Optional[int] = None              # Attempts allowed before escalation
    escalate_after: Optional[Union[int, str]] = None  # Attempt count or "30m"
    priority: Optional[str] = None             # Priority for notify actions

    @property
    def enabled(self) -> bool:
        return self.auto is not False

    def merged_with(self, override: Optional[ReactionConfig]) -> ReactionConfig:
        """Return a copy with every field set in ``override`` taking precedence."""
        if override is None:
            return ReactionConfig(**{f.name: getattr(self, f.name) for f in fields(self)})
        values = {}
        for f in fields(self):
            value = getattr(override, f.name)
            values[f.name] = value if value is not None else getattr(self, f.name)
        return ReactionConfig(**values)


@dataclass
class NotificationRouting:
    """Notifier names per priority tier."""
    urgent: list[str] = field(default_factory=list)
    action: list[str] = field(default_factory=list)
    warning: list[str] = field(default_factory=list)
    info: list[str] = field(default_factory=list)

    def for_priority(self, priority: str) -> list[str]:
        return list(getattr(self, priority, []) or [])


@dataclass
class ProjectConfig:
    """One repository that sessions can be spawned against."""
    id: str
    name: str
    repo: str                                  # "owner/name"
    path: str                                  # Local repository checkout
    default_branch: str = "main"
    session_prefix: str = ""
    runtime: Optional[str] = None
    agent: Optional[str] = None
    workspace: Optional[str] = None
    tracker: Optional[PluginRef] = None
    scm: Optional[PluginRef] = None
    reactions: dict[str, ReactionConfig] = field(default_factory=dict)
    agent_rules: Optional[str] = None          # Inline rules appended to prompts
    agent_rules_file: Optional[str] = None     # Rules file, relative to path

    def __post_init__(self) -> None:
        if not self.session_prefix:
            self.session_prefix = self.id


@dataclass
class OrchestratorConfig:
    """Root configuration object."""
    data_dir: str = "~/.agent-fleet"
    poll_interval_seconds: float = 30.0
    action_timeout_seconds: float = 30.0
    defaults: DefaultPlugins = field(default_factory=DefaultPlugins)
    plugins: list[str] = field(default_factory=list)
    notifiers: dict[str, dict[str, Any]] = field(default_factory=dict)
    notification_routing: NotificationRouting = field(default_factory=NotificationRouting)
    reactions: dict[str, ReactionConfig] = field(default_factory=dict)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)
    config_path: Optional[str] = None

    def __post_init__(self) -> None:
        self.data_dir = str(Path(self.data_dir).expanduser())

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def sessions_path(self) -> Path:
        """Directory holding one metadata file per active session."""
        return self.data_path / "sessions"

    @property
    def archive_path(self) -> Path:
        return self.sessions_path / "archive"

    @property
    def logs_path(self) -> Path:
        return self.data_path / "logs"

    @property
    def events_path(self) -> Path:
        return self.data_path / "events"

    def get_project(self, project_id: str) -> Optional[ProjectConfig]:
        return self.projects.get(project_id)

    def reaction_for(self, key: str, project_id: Optional[str] = None) -> Optional[ReactionConfig]:
        """
        Resolve the effective reaction for a key.

        The project's entry (if any) is merged over the global entry field by
        field. Returns None when neither level defines the key.
        """
        base = self.reactions.get(key)
        project = self.projects.get(project_id) if project_id else None
        override = project.reactions.get(key) if project else None
        if base is None and override is None:
            return None
        if base is None:
            return override.merged_with(None)
        return base.merged_with(override)


def default_reactions() -> dict[str, ReactionConfig]:
    """Reactions applied underneath whatever the config file declares."""
    return {
        "ci-failed": ReactionConfig(
            auto=True,
            action="send-to-agent",
            message="CI is failing on your PR. Inspect the failing checks and push a fix.",
            retries=2,
            escalate_after=2,
        ),
        "changes-requested": ReactionConfig(
            auto=True,
            action="send-to-agent",
            message="Review requested changes on your PR. Address the comments and push.",
            escalate_after="30m",
        ),
        "agent-needs-input": ReactionConfig(auto=True, action="notify", priority="urgent"),
        "agent-stuck": ReactionConfig(auto=True, action="notify", priority="urgent"),
        "agent-exited": ReactionConfig(auto=True, action="notify", priority="urgent"),
        "approved-and-green": ReactionConfig(auto=True, action="notify", priority="action"),
        "all-complete": ReactionConfig(auto=True, action="notify", priority="action"),
    }


# Global config cache
_config_cache: Optional[OrchestratorConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string, dict or list.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_defaults(data: dict[str, Any]) -> DefaultPlugins:
    """Parse the defaults section."""
    return DefaultPlugins(
        runtime=data.get("runtime", "tmux"),
        agent=data.get("agent", "claude-code"),
        workspace=data.get("workspace", "worktree"),
        notifiers=list(data.get("notifiers", []) or []),
    )


def _parse_plugin_ref(name: str, data: Any) -> Optional[PluginRef]:
    """Parse a tracker/scm reference: either a plugin name or {plugin, ...options}."""
    if data is None:
        return None
    if isinstance(data, str):
        return PluginRef(plugin=data)
    if not isinstance(data, dict) or not data.get("plugin"):
        raise ConfigError(f"{name}.plugin is required")
    options = {k: v for k, v in data.items() if k != "plugin"}
    return PluginRef(plugin=data["plugin"], options=options)


def _parse_reaction_config(key: str, data: dict[str, Any]) -> ReactionConfig:
    """Parse one reaction entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"reactions.{key} must be a mapping")
    action = data.get("action")
    if action is not None and action not in REACTION_ACTIONS:
        raise ConfigError(
            f"reactions.{key}.action must be one of {', '.join(REACTION_ACTIONS)}"
        )
    priority = data.get("priority")
    if priority is not None and priority not in PRIORITY_TIERS:
        raise ConfigError(
            f"reactions.{key}.priority must be one of {', '.join(PRIORITY_TIERS)}"
        )
    retries = data.get("retries")
    return ReactionConfig(
        auto=data.get("auto"),
        action=action,
        message=data.get("message"),
        retries=int(retries) if retries is not None else None,
        escalate_after=data.get("escalate_after"),
        priority=priority,
    )


def _parse_reactions(data: dict[str, Any]) -> dict[str, ReactionConfig]:
    return {key: _parse_reaction_config(key, value) for key, value in (data or {}).items()}


def _parse_notification_routing(data: dict[str, Any]) -> NotificationRouting:
    """Parse notification routing; unknown tiers are rejected."""
    unknown = set(data or {}) - set(PRIORITY_TIERS)
    if unknown:
        raise ConfigError(f"Unknown notification tier(s): {', '.join(sorted(unknown))}")
    return NotificationRouting(**{
        tier: list((data or {}).get(tier, []) or []) for tier in PRIORITY_TIERS
    })


def _parse_project_config(project_id: str, data: dict[str, Any]) -> ProjectConfig:
    """Parse one project entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"projects.{project_id} must be a mapping")
    if not data.get("repo"):
        raise ConfigError(f"projects.{project_id}.repo is required")
    if not data.get("path"):
        raise ConfigError(f"projects.{project_id}.path is required")
    return ProjectConfig(
        id=project_id,
        name=data.get("name", project_id),
        repo=data["repo"],
        path=str(Path(data["path"]).expanduser()),
        default_branch=data.get("default_branch", "main"),
        session_prefix=data.get("session_prefix", ""),
        runtime=data.get("runtime"),
        agent=data.get("agent"),
        workspace=data.get("workspace"),
        tracker=_parse_plugin_ref(f"projects.{project_id}.tracker", data.get("tracker")),
        scm=_parse_plugin_ref(f"projects.{project_id}.scm", data.get("scm")),
        reactions=_parse_reactions(data.get("reactions", {})),
        agent_rules=data.get("agent_rules"),
        agent_rules_file=data.get("agent_rules_file"),
    )


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """
    Locate the configuration file.

    Checks AGENT_FLEET_CONFIG first, then agent-fleet.yaml / .yml in the
    starting directory and each of its parents.
    """
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()

    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        for name in CONFIG_FILE_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def parse_config(raw_data: dict[str, Any], config_path: Optional[str] = None) -> OrchestratorConfig:
    """
    Build an OrchestratorConfig from already-loaded YAML data.

    Raises:
        ConfigError: If a section is malformed or a ${VAR} is unset.
    """
    data = _resolve_env_vars(raw_data or {})

    reactions = default_reactions()
    for key, user_reaction in _parse_reactions(data.get("reactions", {})).items():
        base = reactions.get(key)
        reactions[key] = base.merged_with(user_reaction) if base else user_reaction

    projects = {
        project_id: _parse_project_config(project_id, project_data)
        for project_id, project_data in (data.get("projects", {}) or {}).items()
    }

    return OrchestratorConfig(
        data_dir=data.get("data_dir", "~/.agent-fleet"),
        poll_interval_seconds=float(data.get("poll_interval_seconds", 30)),
        action_timeout_seconds=float(data.get("action_timeout_seconds", 30)),
        defaults=_parse_defaults(data.get("defaults", {}) or {}),
        plugins=list(data.get("plugins", []) or []),
        notifiers=dict(data.get("notifiers", {}) or {}),
        notification_routing=_parse_notification_routing(data.get("notification_routing", {})),
        reactions=reactions,
        projects=projects,
        config_path=config_path,
    )


def load_config(config_path: Optional[str] = None) -> OrchestratorConfig:
    """
    Load configuration from agent-fleet.yaml.

    Args:
        config_path: Optional path to config file. If not provided, the file
                     is discovered via find_config_file().

    Returns:
        OrchestratorConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is missing, invalid or cannot be loaded.
    """
    path = Path(config_path).expanduser() if config_path else find_config_file()
    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILE_NAMES[0]} found (set {CONFIG_ENV_VAR} or pass --config)"
        )
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    return parse_config(raw_data, config_path=str(path))


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> OrchestratorConfig:
    """
    Get the cached configuration, loading it if necessary.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
