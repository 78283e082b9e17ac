"""Tests for agent_fleet.utils.fs."""

import pytest

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


class TestFs:
    def test_safe_write_creates_parents_and_replaces(self, tmp_path):
        target = tmp_path / "a" / "b" / "record"

        safe_write(target, "one")
        safe_write(target, "two")

        assert read_file(target) == "two"
        assert [p.name for p in target.parent.iterdir()] == ["record"]

    def test_append_line_adds_newlines(self, tmp_path):
        target = tmp_path / "log.jsonl"

        append_line(target, "first")
        append_line(target, "second\n")

        assert target.read_text() == "first\nsecond\n"

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(FileSystemError, match="File not found"):
            read_file(tmp_path / "missing")

    def test_remove_file(self, tmp_path):
        target = tmp_path / "x"
        target.write_text("x")

        assert remove_file(target) is True
        assert remove_file(target) is False
        assert not file_exists(target)

    def test_move_file(self, tmp_path):
        src = tmp_path / "src"
        src.write_text("data")

        dst = move_file(src, tmp_path / "archive" / "dst")

        assert dst.read_text() == "data"
        assert not src.exists()

    def test_move_missing_source(self, tmp_path):
        with pytest.raises(FileSystemError):
            move_file(tmp_path / "nope", tmp_path / "dst")

    def test_ensure_dir_over_file(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(FileSystemError):
            ensure_dir(blocker)
