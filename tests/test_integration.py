"""Integration tests for a complete ticket-create form session.

Tests cover end-to-end scenarios combining:
- FormSession orchestration
- Template merging (dirty protection, tags, dates, authorization)
- Core workflow evaluation after every change
- Lookups, reset and configuration changes
- Submit validation and audit events
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from dateutil import tz

from formweave.config import EvaluationConfig
from formweave.errors import InactiveTemplateError, InvalidDefinitionError, TemplateNotFoundError
from formweave.runtime import FormSession
from formweave.templates import StaticAuthorization, Template
from formweave.types import Actor, ActorKind, EventType

TICKET_CREATE = {
    "object": "Ticket",
    "fields": [
        {"name": "title", "type": "text", "maxLength": 250, "required": True, "role": "always_overwrite"},
        {"name": "body", "type": "freeform", "object": "article"},
        {"name": "customer_id", "type": "select"},
        {"name": "group_id", "type": "select", "required": True, "permissionGated": True},
        {"name": "owner_id", "type": "select", "permissionGated": True},
        {"name": "state_id", "type": "select", "options": ["1", "2", "3", "7"], "default": "2"},
        {"name": "priority_id", "type": "select", "options": ["1", "2", "3"], "default": "2"},
        {"name": "pending_time", "type": "datetime", "shown": False},
        {"name": "tags", "type": "tag_list"},
        {"name": "due_date", "type": "date", "default": 24},
    ],
    "workflows": [
        {
            "name": "pending reminder shows pending time",
            "object": "Ticket",
            "condition_selected": {"ticket.state_id": {"operator": "is", "value": "3"}},
            "perform": {"ticket.pending_time": {"operator": "show", "show": "true"}},
        },
        {
            "name": "pending reminder needs pending time",
            "object": "Ticket",
            "condition_selected": {"ticket.state_id": {"operator": "is", "value": "3"}},
            "perform": {"ticket.pending_time": {"operator": "set_mandatory", "set_mandatory": "true"}},
        },
        {
            "name": "pending close drops pending time",
            "object": "Ticket",
            "condition_selected": {"ticket.state_id": {"operator": "is", "value": "7"}},
            "perform": {"ticket.pending_time": {"operator": "remove", "remove": "true"}},
        },
    ],
    "templates": [
        {
            "id": "1",
            "name": "Printer on fire",
            "options": {
                "ticket.title": {"value": "Printer on fire"},
                "article.body": {"value": "The printer on floor 3 is on fire."},
                "ticket.tags": {"value": "printer, fire", "operator": "add"},
                "ticket.group_id": {"value": "1"},
                "ticket.owner_id": {"value": "99"},
                "ticket.state_id": {"value": "3"},
                "ticket.pending_time": {"value": "1", "operator": "relative", "range": "month"},
                "ticket.customer_id": {"value": "42", "value_completion": "Nicole Braun <nicole.braun@example.com>"},
            },
        },
        {
            "id": "2",
            "name": "Waiting for customer",
            "options": {
                "ticket.title": {"value": "Waiting for customer"},
                "ticket.group_id": {"value": "2"},
                "ticket.state_id": {"value": "7"},
                "ticket.pending_time": {"value": "2", "operator": "relative", "range": "day"},
            },
        },
        {
            "id": "3",
            "name": "Retired",
            "active": False,
            "options": {"ticket.title": {"value": "Retired"}},
        },
    ],
}


@pytest.fixture
def session(clock):
    agent = Actor(kind=ActorKind.AGENT, id="agent_1", name="Agent One")
    authorization = StaticAuthorization({"agent_1": {"group_id": ["1", "2"], "owner_id": ["10"]}})
    session = FormSession.from_dict(TICKET_CREATE, user=agent, authorization=authorization, clock=clock)
    assert session.open()["ok"] is True
    return session


class TestOpen:
    """Test the initial form state."""

    def test_defaults(self, session):
        """Should seed select and date defaults."""
        assert session.store.value("priority_id") == "2"
        assert session.store.value("state_id") == "2"
        assert session.store.value("due_date") == date(2024, 2, 1)
        assert session.store.get("pending_time").visible is False

    def test_available_templates(self, session):
        """Should only offer active templates."""
        assert [t.id for t in session.available_templates()] == ["1", "2"]
        assert session.get_form()["templates"] == [
            {"id": "1", "name": "Printer on fire"},
            {"id": "2", "name": "Waiting for customer"},
        ]


class TestTemplateOnCleanForm:
    """Test applying a template to an untouched form."""

    def test_apply_and_submit(self, session):
        """Should merge the template, run the workflow and submit."""
        outcome = session.apply_template("1")
        assert outcome.ok
        store = session.store
        assert store.value("title") == "Printer on fire"
        assert store.value("tags") == ["printer", "fire"]
        assert store.value("group_id") == "1"
        assert store.value("owner_id") is None
        assert store.value("priority_id") == "2"
        assert store.get("customer_id").display == "Nicole Braun <nicole.braun@example.com>"

        pending = store.get("pending_time")
        assert pending.value == datetime(2024, 2, 29, 10, 15, tzinfo=timezone.utc)
        assert pending.visible is True
        assert pending.required is True

        result = session.submit()
        assert result["ok"] is True
        assert result["fields"]["pending_time"] == "2024-02-29T10:15:00+00:00"
        assert result["fields"]["due_date"] == "2024-02-01"
        assert "owner_id" not in result["fields"]

    def test_unknown_template(self, session):
        """Should raise TemplateNotFoundError for unknown ids."""
        with pytest.raises(TemplateNotFoundError):
            session.apply_template("404")

    def test_inactive_template(self, session):
        """Should refuse inactive templates without changing the form."""
        revision = session.store.revision
        outcome = session.apply_template("3")
        assert isinstance(outcome.error, InactiveTemplateError)
        assert session.store.revision == revision


class TestTemplateOnDirtyForm:
    """Test applying a template after the user typed."""

    def test_user_content_survives(self, session):
        """Should overwrite the title but keep the user's body and tags."""
        session.edit("title", "My printer")
        session.edit("article.body", "It smells of smoke.")
        session.edit("tags", "urgent")
        session.apply_template("1")
        store = session.store
        assert store.value("title") == "Printer on fire"
        assert store.value("body") == "It smells of smoke."
        assert store.value("tags") == ["urgent", "printer", "fire"]

    def test_title_truncated(self, session):
        """Should truncate the title at its maximum length."""
        session.edit("title", "x" * 300)
        assert session.store.value("title") == "x" * 250


class TestPendingStates:
    """Test workflow rules around pending states."""

    def test_pending_close_drops_template_pending_time(self, session):
        """Should clear the template's pending time for a pending-close state."""
        session.apply_template("2")
        pending = session.store.get("pending_time")
        assert pending.value is None
        assert pending.visible is False

        result = session.submit()
        assert result["ok"] is True
        assert result["fields"]["state_id"] == "7"
        assert "pending_time" not in result["fields"]

    def test_switching_state_hides_pending_time_again(self, session):
        """Should recompute visibility from defaults when the state changes."""
        session.edit("state_id", "3")
        assert session.store.get("pending_time").visible is True
        session.edit("state_id", "2")
        assert session.store.get("pending_time").visible is False
        assert session.store.get("pending_time").required is False


class TestSubmit:
    """Test submit validation."""

    def test_missing_required_fields(self, session):
        """Should reject the submit and name the missing fields."""
        result = session.submit()
        assert result["ok"] is False
        assert sorted(result["missingFields"]) == ["group_id", "title"]
        assert session.get_events()[-1].type is EventType.SUBMIT_REJECTED

    def test_hidden_fields_excluded(self, session):
        """Should leave hidden fields out of the payload."""
        session.edit("pending_time", "2024-03-01T09:00:00+00:00")
        session.edit("title", "Printer")
        session.edit("group_id", "1")
        handled = []
        result = session.submit(handled.append)
        assert result["ok"] is True
        assert "pending_time" not in result["fields"]
        assert handled == [result["fields"]]

    def test_required_pending_time(self, session):
        """Should require the pending time once the workflow demands it."""
        session.edit("title", "Printer")
        session.edit("group_id", "1")
        session.edit("state_id", "3")
        result = session.submit()
        assert result["ok"] is False
        assert result["missingFields"] == ["pending_time"]

    def test_unparseable_date_not_stored(self, session):
        """Should drop a date the user typed that does not parse, so submit still needs one."""
        session.edit("title", "Printer")
        session.edit("group_id", "1")
        session.edit("state_id", "3")
        session.edit("pending_time", "not a date")
        assert session.store.value("pending_time") is None
        result = session.submit()
        assert result["ok"] is False
        assert result["missingFields"] == ["pending_time"]

    def test_user_datetime_truncated_to_minute(self, session):
        """Should store and submit a typed datetime without seconds."""
        session.edit("title", "Printer")
        session.edit("group_id", "1")
        session.edit("state_id", "3")
        session.edit("pending_time", "2024-03-01T09:00:42+00:00")
        assert session.store.value("pending_time") == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        result = session.submit()
        assert result["ok"] is True
        assert result["fields"]["pending_time"] == "2024-03-01T09:00:00+00:00"


class TestLookups:
    """Test lookups through the session."""

    def test_stale_lookup(self, session):
        """Should discard a result for superseded input."""
        session.edit("customer_id", "4")
        ticket = session.begin_lookup("customer_id")
        session.edit("customer_id", "42")
        outcome = session.resolve_lookup(ticket, ["4"])
        assert outcome.discarded
        assert session.store.value("customer_id") == "42"

    def test_failed_lookup(self, session):
        """Should report the failure without changing the field."""
        session.edit("customer_id", "42")
        outcome = session.fail_lookup(session.begin_lookup("customer_id"), "timeout")
        assert outcome.error.to_dict()["kind"] == "lookup_failed"
        assert session.store.value("customer_id") == "42"


class TestResetAndConfig:
    """Test reset and configuration changes."""

    def test_reset(self, session):
        """Should restore defaults and allow a clean template merge."""
        session.edit("article.body", "Mine")
        session.reset()
        assert session.store.value("body") is None
        session.apply_template("1")
        assert session.store.value("body") == "The printer on floor 3 is on fire."

    def test_reset_resolves_date_defaults_again(self):
        """Should offset numeric date defaults from the time of open and reset."""
        now = [datetime(2024, 1, 31, 10, 15, tzinfo=timezone.utc)]
        session = FormSession.from_dict(TICKET_CREATE, clock=lambda: now[0])
        now[0] += timedelta(days=2)
        session.open()
        assert session.store.value("due_date") == date(2024, 2, 3)
        now[0] += timedelta(days=5)
        session.reset()
        assert session.store.value("due_date") == date(2024, 2, 8)

    def test_timezone_change(self, session):
        """Should interpret later static dates in the new timezone."""
        session.update_config(EvaluationConfig(timezone="Europe/Berlin"))
        session.templates["4"] = Template.from_dict({
            "id": "4",
            "options": {"ticket.pending_time": {"value": "2024-03-05 08:30", "operator": "static"}},
        })
        session.apply_template("4")
        expected = datetime(2024, 3, 5, 8, 30, tzinfo=tz.gettz("Europe/Berlin"))
        assert session.store.value("pending_time") == expected


class TestEvents:
    """Test the audit trail of a session."""

    def test_event_sequence(self, session):
        """Should record one audit event per action, in order."""
        session.edit("title", "Printer")
        session.apply_template("1")
        session.submit()
        types = [e.type for e in session.get_events()]
        assert types == [
            EventType.FORM_OPENED,
            EventType.FIELD_UPDATED,
            EventType.TEMPLATE_APPLIED,
            EventType.FORM_SUBMITTED,
        ]
        assert all(e.form_id == session.form_id for e in session.get_events())

    def test_get_events_returns_copy(self, session):
        """Should not expose the internal event list."""
        session.get_events().clear()
        assert len(session.get_events()) == 1


class TestDefinitions:
    """Test loading invalid definitions."""

    def test_invalid_workflow(self):
        """Should raise InvalidDefinitionError for a malformed rule."""
        data = dict(TICKET_CREATE, workflows=[{"object": "Ticket", "perform": {"ticket.title": {"operator": "explode"}}}])
        with pytest.raises(InvalidDefinitionError):
            FormSession.from_dict(data)
