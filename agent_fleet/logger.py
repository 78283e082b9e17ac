"""
Structured JSONL logging for agent-fleet.

This module provides:
- A JSONL log writer for audit trails of orchestrator activity
- Size-based rotation (<name>.jsonl -> <name>.1.jsonl ... <name>.N.jsonl)
- Log levels (debug, info, warn, error)
- Filtered reading across the live file and its rotated backups
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from agent_fleet.config import OrchestratorConfig
from agent_fleet.utils.fs import FileSystemError, append_line, ensure_dir

_log = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_BACKUPS = 5


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FleetLogger:
    """
    JSONL log writer with size-based rotation.

    Each log entry is a JSON object with:
    - ts: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - source: Component that wrote the entry (e.g. "lifecycle", "cli")
    - session_id: Session the entry concerns, or null
    - message: Human readable text
    - data: Additional structured data (dict)

    Writes are best-effort: a failing disk never propagates into the caller.
    Once closed, further appends are ignored.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        source: str = "lifecycle",
    ) -> None:
        """
        Initialize the writer.

        Args:
            file_path: Path of the live .jsonl file.
            max_size_bytes: Rotate once the live file reaches this size.
            max_backups: Number of rotated files kept.
            source: Default source recorded on entries.
        """
        self.file_path = Path(file_path)
        self.max_size_bytes = max_size_bytes
        self.max_backups = max_backups
        self.source = source
        self._closed = False

    @classmethod
    def for_config(cls, config: OrchestratorConfig, name: str = "lifecycle") -> FleetLogger:
        """Logger writing to <logs_path>/<name>.jsonl."""
        return cls(config.logs_path / f"{name}.jsonl", source=name)

    @property
    def closed(self) -> bool:
        return self._closed

    def _backup_path(self, index: int) -> Path:
        stem = self.file_path.name
        if stem.endswith(".jsonl"):
            stem = stem[: -len(".jsonl")]
        return self.file_path.with_name(f"{stem}.{index}.jsonl")

    def _rotate_if_needed(self) -> None:
        try:
            size = self.file_path.stat().st_size
        except OSError:
            return
        if size < self.max_size_bytes:
            return

        oldest = self._backup_path(self.max_backups)
        try:
            if oldest.exists():
                oldest.unlink()
            for index in range(self.max_backups - 1, 0, -1):
                source = self._backup_path(index)
                if source.exists():
                    os.replace(source, self._backup_path(index + 1))
            os.replace(self.file_path, self._backup_path(1))
        except OSError as e:
            _log.warning("Log rotation failed for %s: %s", self.file_path, e)

    def append(self, entry: dict[str, Any]) -> None:
        """
        Append one structured entry.

        Missing ``ts``/``level``/``source`` fields are filled in.
        """
        if self._closed:
            return
        record = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": LogLevel.INFO,
            "source": self.source,
            "session_id": None,
            **entry,
        }
        try:
            ensure_dir(self.file_path.parent)
            self._rotate_if_needed()
            append_line(self.file_path, json.dumps(record, default=str))
        except FileSystemError as e:
            _log.warning("Could not write log entry to %s: %s", self.file_path, e)

    def log(
        self,
        message: str,
        level: str = LogLevel.INFO,
        session_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> None:
        """
        Log a message.

        Args:
            message: Human readable text.
            level: Log level (debug, info, warn, error).
            session_id: Session the entry concerns.
            data: Additional data to include in the entry.
            source: Overrides the logger's default source.
        """
        entry: dict[str, Any] = {
            "level": level,
            "source": source or self.source,
            "session_id": session_id,
            "message": message,
        }
        if data:
            entry["data"] = data
        self.append(entry)

    def debug(self, message: str, session_id: Optional[str] = None, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug entry."""
        self.log(message, LogLevel.DEBUG, session_id, data)

    def info(self, message: str, session_id: Optional[str] = None, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info entry."""
        self.log(message, LogLevel.INFO, session_id, data)

    def warn(self, message: str, session_id: Optional[str] = None, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning entry."""
        self.log(message, LogLevel.WARN, session_id, data)

    def error(self, message: str, session_id: Optional[str] = None, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error entry."""
        self.log(message, LogLevel.ERROR, session_id, data)

    def close(self) -> None:
        """Stop accepting entries."""
        self._closed = True

    def read_logs(
        self,
        level: Optional[str] = None,
        source: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Rotated backups are read oldest first, then the live file. Corrupt
        lines are skipped. ``limit`` keeps the most recent matches.
        """
        paths = [self._backup_path(i) for i in range(self.max_backups, 0, -1)]
        paths.append(self.file_path)

        entries = []
        for path in paths:
            if not path.exists():
                continue
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue

                    if level and entry.get("level") != level:
                        continue
                    if source and entry.get("source") != source:
                        continue
                    if session_id and entry.get("session_id") != session_id:
                        continue

                    entries.append(entry)

        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries
