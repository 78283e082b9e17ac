"""Tests for agent_fleet.models."""

from datetime import datetime, timezone

import pytest

from agent_fleet.models import (
    RESTORABLE_STATUSES,
    TERMINAL_STATUSES,
    CleanupError,
    CleanupResult,
    RuntimeHandle,
    Session,
    SessionStatus,
    coerce_status,
    parse_iso,
    parse_pr_url,
    to_iso,
)


class TestRuntimeHandle:
    def test_json_round_trip(self):
        handle = RuntimeHandle(id="rt-1", runtime_name="tmux", data={"pane": "%3"})

        assert RuntimeHandle.from_json(handle.to_json()) == handle

    @pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]", '{"runtime_name": "tmux"}'])
    def test_corrupt_values_decode_to_none(self, raw):
        assert RuntimeHandle.from_json(raw) is None

    def test_missing_data_defaults_to_empty(self):
        handle = RuntimeHandle.from_json('{"id": "x", "runtime_name": "tmux"}')

        assert handle.data == {}


class TestParsePrUrl:
    def test_github_url(self):
        pr = parse_pr_url("https://github.com/acme/widgets/pull/123", branch="feat/x", base_branch="main")

        assert pr.number == 123
        assert pr.owner == "acme"
        assert pr.repo == "widgets"
        assert pr.branch == "feat/x"
        assert pr.base_branch == "main"

    def test_other_url_with_trailing_number(self):
        pr = parse_pr_url("https://git.example.com/merge_requests/9")

        assert pr.number == 9
        assert pr.owner == ""

    @pytest.mark.parametrize("url", ["", "https://example.com/no-number"])
    def test_unparseable(self, url):
        assert parse_pr_url(url) is None


class TestTimestamps:
    def test_to_iso_uses_z_suffix(self):
        value = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

        assert to_iso(value) == "2024-05-01T12:30:00Z"
        assert parse_iso(to_iso(value)) == value

    def test_naive_timestamps_are_utc(self):
        assert parse_iso("2024-05-01T12:30:00").tzinfo == timezone.utc

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_garbage_is_none(self, value):
        assert parse_iso(value) is None


class TestStatuses:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {SessionStatus.MERGED, SessionStatus.KILLED}

    def test_restorable_statuses(self):
        assert SessionStatus.KILLED in RESTORABLE_STATUSES
        assert SessionStatus.TERMINATED in RESTORABLE_STATUSES
        assert SessionStatus.MERGED not in RESTORABLE_STATUSES
        assert SessionStatus.WORKING not in RESTORABLE_STATUSES

    def test_coerce_unknown_status(self):
        assert coerce_status("ci_failed") == SessionStatus.CI_FAILED
        assert coerce_status("bogus") == SessionStatus.SPAWNING
        assert coerce_status(None) == SessionStatus.SPAWNING


class TestSession:
    def test_is_terminal(self):
        assert Session(id="a-1", project_id="a", status=SessionStatus.MERGED).is_terminal
        assert not Session(id="a-1", project_id="a", status=SessionStatus.STUCK).is_terminal

    def test_to_dict(self):
        session = Session(
            id="a-1",
            project_id="a",
            status=SessionStatus.PR_OPEN,
            pr=parse_pr_url("https://github.com/o/r/pull/5"),
            runtime_handle=RuntimeHandle(id="rt", runtime_name="tmux"),
        )

        data = session.to_dict()

        assert data["status"] == "pr_open"
        assert data["activity"] == "idle"
        assert data["pr"]["number"] == 5
        assert data["runtime_handle"] == {"id": "rt", "runtime_name": "tmux", "data": {}}
        assert data["restored_at"] is None
        assert data["created_at"].endswith("Z")


class TestCleanupResult:
    def test_to_dict(self):
        result = CleanupResult(killed=["a-1"], skipped=["a-2"], errors=[CleanupError("a-3", "boom")])

        assert result.to_dict() == {
            "killed": ["a-1"],
            "skipped": ["a-2"],
            "errors": [{"session_id": "a-3", "error": "boom"}],
        }
