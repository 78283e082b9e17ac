"""Tests for the file-backed metadata store."""

import pytest

from agent_fleet.metadata import (
    MetadataStore,
    parse_metadata,
    serialize_metadata,
    validate_session_id,
)


@pytest.fixture
def store(tmp_path):
    return MetadataStore(tmp_path / "sessions")


class TestFormat:
    def test_serialize_is_sorted_and_drops_empty(self):
        text = serialize_metadata({"status": "working", "branch": "main", "issue": ""})

        assert text == "branch=main\nstatus=working\n"

    def test_serialize_flattens_newlines(self):
        assert serialize_metadata({"note": "a\nb"}) == "note=a b\n"

    def test_parse_ignores_junk(self):
        content = "# comment\n\nstatus=working\njunk line\npr=https://x/pull/1?a=b\n"

        assert parse_metadata(content) == {
            "status": "working",
            "pr": "https://x/pull/1?a=b",
        }


class TestValidateSessionId:
    @pytest.mark.parametrize("session_id", ["app-1", "my_app.2", "A9"])
    def test_valid(self, session_id):
        assert validate_session_id(session_id) == session_id

    @pytest.mark.parametrize("session_id", ["", "../etc", "a/b", ".hidden", "a..b"])
    def test_invalid(self, session_id):
        with pytest.raises(ValueError):
            validate_session_id(session_id)


class TestMetadataStore:
    def test_write_and_read(self, store):
        store.write("app-1", {"status": "spawning", "project": "my-app"})

        assert store.exists("app-1")
        assert store.read_raw("app-1") == {"status": "spawning", "project": "my-app"}

    def test_read_missing(self, store):
        assert store.read_raw("app-1") is None
        assert not store.exists("app-1")

    def test_update_merges_and_removes(self, store):
        store.write("app-1", {"status": "spawning", "pr": "https://x/pull/1", "issue": "INT-1"})

        merged = store.update("app-1", {"status": "working", "pr": ""})

        assert merged == {"status": "working", "issue": "INT-1"}
        assert store.read_raw("app-1") == merged

    def test_update_leaves_no_temp_files(self, store):
        store.write("app-1", {"status": "spawning"})
        store.update("app-1", {"status": "working"})

        assert sorted(p.name for p in store.sessions_dir.iterdir()) == ["app-1"]

    def test_list_sorted_and_skips_archive(self, store):
        store.write("app-2", {"status": "working"})
        store.write("app-1", {"status": "working"})
        store.delete("app-2")

        assert store.list() == ["app-1"]

    def test_list_empty_directory(self, store):
        assert store.list() == []

    def test_delete_archives(self, store):
        store.write("app-1", {"status": "killed"})

        archived = store.delete("app-1")

        assert archived.parent == store.archive_dir
        assert archived.name.startswith("app-1_")
        assert parse_metadata(archived.read_text()) == {"status": "killed"}
        assert store.read_raw("app-1") is None
        assert store.list_archived("app-1") == [archived]

    def test_delete_without_archive(self, store):
        store.write("app-1", {"status": "killed"})

        assert store.delete("app-1", archive=False) is None
        assert store.list_archived() == []
        assert not store.exists("app-1")

    def test_delete_missing_is_noop(self, store):
        assert store.delete("app-1") is None

    def test_rejects_path_escapes(self, store):
        with pytest.raises(ValueError):
            store.write("../outside", {"status": "working"})

    def test_reserve_is_exclusive(self, store):
        assert store.reserve("app-1", {"status": "spawning"}) is True
        assert store.reserve("app-1", {"status": "working"}) is False

        assert store.read_raw("app-1") == {"status": "spawning"}

    def test_reserve_creates_directory(self, store):
        assert store.reserve("app-1") is True
        assert store.list() == ["app-1"]

    def test_archived_ids(self, store):
        store.write("app-1", {"status": "killed"})
        store.write("my_app-2", {"status": "killed"})
        store.delete("app-1")
        store.delete("my_app-2")

        assert store.archived_ids() == ["app-1", "my_app-2"]
