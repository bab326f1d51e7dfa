"""Unit tests for audit events and the event emitter.

Tests cover:
- FormEvent creation, serialization (to_dict, to_jsonl) and from_dict
- EventEmitter subscriptions and dispatching
- Listener error isolation
"""

import json
from datetime import datetime, timezone

import pytest

from formweave.events import EventEmitter, FormEvent
from formweave.types import Actor, ActorKind, EventType


def make_event(event_type=EventType.FIELD_UPDATED, **kwargs):
    defaults = dict(
        event_id="evt_001",
        type=event_type,
        form_id="form_001",
        ts=datetime(2024, 1, 31, 10, 0, tzinfo=timezone.utc),
        actor=Actor(kind=ActorKind.AGENT, id="agent_1", name="Agent One"),
        revision=3,
    )
    defaults.update(kwargs)
    return FormEvent(**defaults)


class TestFormEventCreation:
    """Test FormEvent creation."""

    def test_create_event_with_string_enum(self):
        """Should convert a string type to EventType."""
        event = make_event("template.applied")
        assert event.type is EventType.TEMPLATE_APPLIED
        assert event.payload is None

    def test_event_is_immutable(self):
        """Should not allow reassigning attributes."""
        event = make_event()
        with pytest.raises(AttributeError):
            event.revision = 4


class TestFormEventSerialization:
    """Test FormEvent serialization."""

    def test_to_dict_with_payload(self):
        """Should use camelCase keys and ISO timestamps."""
        event = make_event(payload={"changes": {"title": ["value"]}})
        data = event.to_dict()
        assert data == {
            "eventId": "evt_001",
            "type": "field.updated",
            "formId": "form_001",
            "ts": "2024-01-31T10:00:00+00:00",
            "actor": {"kind": "agent", "id": "agent_1", "name": "Agent One"},
            "revision": 3,
            "payload": {"changes": {"title": ["value"]}},
        }

    def test_to_dict_without_payload(self):
        """Should omit payload when None."""
        assert "payload" not in make_event().to_dict()

    def test_to_jsonl_is_single_line(self):
        """Should produce compact single-line JSON."""
        line = make_event(payload={"fields": ["title"]}).to_jsonl()
        assert "\n" not in line
        assert json.loads(line)["payload"] == {"fields": ["title"]}

    def test_from_dict_handles_z_timezone(self):
        """Should parse timestamps ending in Z."""
        data = make_event().to_dict()
        data["ts"] = "2024-01-31T10:00:00Z"
        event = FormEvent.from_dict(data)
        assert event.ts == datetime(2024, 1, 31, 10, 0, tzinfo=timezone.utc)
        assert event.actor.id == "agent_1"

    def test_from_dict_restores_event(self):
        """Should rebuild an equal event from its dict."""
        event = make_event(payload={"fields": ["title"]})
        assert FormEvent.from_dict(event.to_dict()) == event


class TestEventEmitter:
    """Test EventEmitter subscriptions and dispatching."""

    def test_specific_and_wildcard_listeners(self):
        """Should call type listeners and then wildcard listeners."""
        emitter = EventEmitter()
        calls = []
        emitter.on(EventType.FIELD_UPDATED, lambda e: calls.append("typed"))
        emitter.on(EventType.FORM_RESET, lambda e: calls.append("other"))
        emitter.on_any(lambda e: calls.append("any"))
        emitter.emit(make_event())
        assert calls == ["typed", "any"]

    def test_unsubscribe(self):
        """Should stop calling removed listeners."""
        emitter = EventEmitter()
        calls = []

        def listener(event):
            calls.append(event.type)

        emitter.on(EventType.FIELD_UPDATED, listener)
        emitter.on_any(listener)
        emitter.off(EventType.FIELD_UPDATED, listener)
        emitter.off_any(listener)
        emitter.emit(make_event())
        assert calls == []

    def test_listener_exceptions_are_isolated(self):
        """Should keep dispatching when a listener raises."""
        emitter = EventEmitter()
        calls = []

        def broken(event):
            raise RuntimeError("boom")

        emitter.on_any(broken)
        emitter.on_any(lambda e: calls.append(e.event_id))
        emitter.emit(make_event())
        assert calls == ["evt_001"]

    def test_listener_count_and_clear(self):
        """Should count listeners per type and in total."""
        emitter = EventEmitter()
        emitter.on(EventType.FIELD_UPDATED, lambda e: None)
        emitter.on(EventType.FIELD_UPDATED, lambda e: None)
        emitter.on_any(lambda e: None)
        assert emitter.listener_count(EventType.FIELD_UPDATED) == 2
        assert emitter.listener_count() == 3
        emitter.clear()
        assert emitter.listener_count() == 0
