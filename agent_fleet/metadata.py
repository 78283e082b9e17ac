"""
File-backed session metadata store.

Each active session owns one flat ``key=value`` file named after the session
id inside the sessions directory. Killing a session moves its file into
``archive/<id>_<timestamp>`` so history survives while the active area only
lists live records.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from agent_fleet.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    move_file,
    read_file,
    remove_file,
    safe_write,
)

logger = logging.getLogger(__name__)

# Session ids become file names; nothing that could escape the directory.
_VALID_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def validate_session_id(session_id: str) -> str:
    if not session_id or not _VALID_ID.match(session_id) or ".." in session_id:
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


def serialize_metadata(data: dict[str, str]) -> str:
    """Render a metadata map as sorted key=value lines. Empty values are dropped."""
    lines = []
    for key in sorted(data):
        value = data[key]
        if value is None or value == "":
            continue
        value = str(value).replace("\r", " ").replace("\n", " ")
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def parse_metadata(content: str) -> dict[str, str]:
    """Parse key=value lines. Blank lines, comments and junk lines are ignored."""
    data: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key:
            data[key] = value.strip()
    return data


class MetadataStore:
    """
    Read/write/archive access to session metadata files.

    A single session's read-merge-write (update) is the unit of consistency;
    writes go through an atomic rename so readers never see a torn file.
    """

    def __init__(self, sessions_dir: Union[str, Path]) -> None:
        self.sessions_dir = Path(sessions_dir)
        self.archive_dir = self.sessions_dir / "archive"

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / validate_session_id(session_id)

    def exists(self, session_id: str) -> bool:
        return file_exists(self._path(session_id))

    def read_raw(self, session_id: str) -> Optional[dict[str, str]]:
        """Return the stored map, or None when the session has no record."""
        path = self._path(session_id)
        if not file_exists(path):
            return None
        try:
            return parse_metadata(read_file(path))
        except FileSystemError as e:
            logger.warning("Could not read metadata for %s: %s", session_id, e)
            return None

    def write(self, session_id: str, data: dict[str, str]) -> None:
        """Replace the record for a session."""
        ensure_dir(self.sessions_dir)
        safe_write(self._path(session_id), serialize_metadata(data))

    def reserve(self, session_id: str, data: Optional[dict[str, str]] = None) -> bool:
        """
        Atomically claim a session id by creating its record.

        Returns False when a record for the id already exists. The claim is
        exclusive across concurrent callers (and processes) sharing the
        sessions directory.
        """
        path = self._path(session_id)
        ensure_dir(self.sessions_dir)
        try:
            with open(path, "x") as f:
                f.write(serialize_metadata(data or {}))
        except FileExistsError:
            return False
        return True

    def update(self, session_id: str, updates: dict[str, str]) -> dict[str, str]:
        """
        Merge ``updates`` into an existing record and persist it.

        A value of "" removes the key. Updating a session with no record
        creates one.
        """
        current = self.read_raw(session_id) or {}
        for key, value in updates.items():
            if value is None or value == "":
                current.pop(key, None)
            else:
                current[key] = str(value)
        self.write(session_id, current)
        return current

    def delete(self, session_id: str, archive: bool = True) -> Optional[Path]:
        """
        Remove a session's record from the active area.

        With ``archive`` the file is moved to ``archive/<id>_<timestamp>`` and
        the archive path returned.
        """
        path = self._path(session_id)
        if not file_exists(path):
            return None
        if not archive:
            remove_file(path)
            return None
        ensure_dir(self.archive_dir)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return move_file(path, self.archive_dir / f"{session_id}_{stamp}")

    def list(self) -> list[str]:
        """Session ids with an active record, sorted."""
        if not self.sessions_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.sessions_dir.iterdir()
            if entry.is_file() and not entry.name.startswith(".") and _VALID_ID.match(entry.name)
        )

    def list_archived(self, session_id: Optional[str] = None) -> list[Path]:
        """Archived record files, optionally limited to one session id."""
        if not self.archive_dir.is_dir():
            return []
        entries = sorted(p for p in self.archive_dir.iterdir() if p.is_file())
        if session_id is None:
            return entries
        return [p for p in entries if p.name.startswith(f"{session_id}_")]

    def archived_ids(self) -> list[str]:
        """Distinct session ids that have at least one archived record."""
        ids = set()
        for path in self.list_archived():
            session_id, sep, _ = path.name.rpartition("_")
            if sep and _VALID_ID.match(session_id):
                ids.add(session_id)
        return sorted(ids)
