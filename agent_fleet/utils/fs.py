"""
File system helpers for agent-fleet.

Session metadata, JSONL logs and the event log all live on disk under the
configured data directory. This module provides:
- Atomic writes (temp file in the same directory, then rename)
- Append-only line writes for JSONL files
- Directory creation and safe file moves for archiving
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory (and parents) if it does not exist.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace a file's content atomically.

    Readers either see the previous content or the new content, never a
    partially written file.

    Raises:
        FileSystemError: If the write or rename fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def append_line(path: str | Path, line: str, encoding: str = "utf-8") -> None:
    """
    Append one line to a file, creating it and its directory if needed.

    Raises:
        FileSystemError: If the append fails.
    """
    path = Path(path)
    ensure_dir(path.parent)
    try:
        with open(path, "a", encoding=encoding) as f:
            f.write(line.rstrip("\n") + "\n")
    except OSError as e:
        raise FileSystemError(f"Failed to append to {path}: {e}")


def file_exists(path: str | Path) -> bool:
    """Return True if path exists and is a regular file."""
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a text file.

    Raises:
        FileSystemError: If the file is missing or cannot be decoded.
    """
    path = Path(path)

    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def remove_file(path: str | Path) -> bool:
    """
    Remove a file if present.

    Returns:
        True if a file was removed, False if it did not exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)
    if not path.exists():
        return False
    try:
        path.unlink()
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}")


def move_file(src: str | Path, dst: str | Path) -> Path:
    """
    Move a file, creating the destination directory.

    Raises:
        FileSystemError: If the source is missing or the move fails.
    """
    src = Path(src)
    dst = Path(dst)

    if not src.is_file():
        raise FileSystemError(f"Source file not found: {src}")

    ensure_dir(dst.parent)
    try:
        shutil.move(str(src), str(dst))
    except OSError as e:
        raise FileSystemError(f"Failed to move {src} to {dst}: {e}")
    return dst
