"""Tests for the events package: types, bus and JSONL persistence."""

from datetime import timezone

import pytest

from agent_fleet.events import (
    EventBus,
    EventLog,
    EventPriority,
    EventType,
    OrchestratorEvent,
    create_event,
)


def _event(session_id="app-1", event_type=EventType.SESSION_WORKING, **kwargs):
    return create_event(event_type, session_id, "my-app", "something happened", **kwargs)


class TestOrchestratorEvent:
    def test_create_event_defaults(self):
        event = _event()

        assert event.priority == EventPriority.INFO
        assert event.data == {}
        assert len(event.id) == 8
        assert event.timestamp.tzinfo == timezone.utc

    def test_dict_round_trip(self):
        event = _event(priority=EventPriority.URGENT, data={"old_status": "working"})

        restored = OrchestratorEvent.from_dict(event.to_dict())

        assert restored == event
        assert event.to_dict()["type"] == "session.working"

    def test_events_are_immutable(self):
        event = _event()

        with pytest.raises(AttributeError):
            event.message = "changed"

    def test_str(self):
        text = str(_event(priority=EventPriority.ACTION))

        assert text.startswith("[action] session.working session=app-1")


class TestEventBus:
    def test_type_and_global_subscribers(self):
        bus = EventBus()
        typed, everything = [], []
        bus.subscribe(EventType.CI_FAILING, typed.append)
        bus.subscribe_all(everything.append)

        bus.emit(_event(event_type=EventType.CI_FAILING))
        bus.emit(_event(event_type=EventType.SESSION_WORKING))

        assert [e.type for e in typed] == [EventType.CI_FAILING]
        assert len(everything) == 2

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.CI_FAILING, received.append)
        bus.unsubscribe(EventType.CI_FAILING, received.append)

        bus.emit(_event(event_type=EventType.CI_FAILING))

        assert received == []

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe_all(broken)
        bus.subscribe_all(received.append)

        bus.emit(_event())

        assert len(received) == 1


class TestEventLog:
    def test_append_and_read(self, tmp_path):
        log = EventLog(tmp_path / "events")
        first, second = _event("app-1"), _event("app-2", event_type=EventType.CI_FAILING)

        log.append(first)
        log.append(second)

        assert log.read_recent() == [first, second]
        assert log.read_recent(session_id="app-2") == [second]
        assert log.read_recent(event_types=[EventType.SESSION_WORKING]) == [first]
        assert log.read_recent(limit=1) == [second]

    def test_missing_file(self, tmp_path):
        assert EventLog(tmp_path / "events").read_recent() == []

    def test_corrupt_lines_skipped(self, tmp_path):
        log = EventLog(tmp_path / "events")
        log.append(_event())
        with open(log.path, "a") as f:
            f.write("garbage\n{\"id\": \"x\"}\n")

        assert len(log.read_recent(limit=0)) == 1

    def test_write_failure_is_swallowed(self, tmp_path):
        blocker = tmp_path / "events"
        blocker.write_text("not a directory")

        EventLog(blocker).append(_event())
