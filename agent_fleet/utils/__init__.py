"""Utility modules for agent-fleet."""

from agent_fleet.utils.fs import (
    FileSystemError,
    append_line,
    ensure_dir,
    file_exists,
    move_file,
    read_file,
    remove_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "append_line",
    "ensure_dir",
    "file_exists",
    "move_file",
    "read_file",
    "remove_file",
    "safe_write",
]
