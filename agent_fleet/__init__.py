"""
agent-fleet - orchestrate a fleet of autonomous coding-agent sessions.

Spawns isolated workspaces and supervised agent processes for issues,
follows each session through its PR lifecycle, and reacts to transitions
with automated remediation or human notification.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
