"""Unit tests for templates and the template merge engine.

Tests cover:
- Template definitions loaded from dicts
- Clean and dirty scalar fields (protect vs. always overwrite)
- Tag lists, dates and reference display values
- Permission-gated fields
- Atomic commit and dirty preservation
"""

from datetime import datetime, timezone

import pytest

from formweave.config import EvaluationConfig
from formweave.errors import InvalidDefinitionError
from formweave.templates import StaticAuthorization, Template, TemplateMergeEngine

from .conftest import NOW


def make_template(options, **kwargs):
    return Template.from_dict({"id": "1", "name": "Test", "options": options, **kwargs})


@pytest.fixture
def engine(registry, dates):
    return TemplateMergeEngine(registry, dates)


class TestTemplateDefinition:
    """Test loading templates from dicts."""

    def test_from_dict(self):
        """Should keep options in authored order."""
        template = make_template({
            "ticket.title": {"value": "Printer"},
            "ticket.tags": {"value": "foo, bar", "operator": "add"},
        })
        assert list(template.options) == ["ticket.title", "ticket.tags"]
        assert template.options["ticket.tags"].operator == "add"
        assert template.active is True

    def test_integer_id_becomes_string(self):
        """Should normalize template ids to strings."""
        template = Template.from_dict({"id": 7, "options": {}})
        assert template.id == "7"

    def test_missing_options(self):
        """Should raise InvalidDefinitionError without options."""
        with pytest.raises(InvalidDefinitionError) as exc_info:
            Template.from_dict({"id": "1"})
        assert exc_info.value.errors[0].path == "options"


class TestScalarMerge:
    """Test merging of scalar fields."""

    def test_clean_fields_are_overwritten(self, engine, store, agent, config):
        """Should write every template value into a clean form."""
        template = make_template({
            "ticket.title": {"value": "Printer on fire"},
            "article.body": {"value": "Please help"},
            "ticket.priority_id": {"value": "3"},
        })
        engine.apply(template, store, agent, NOW, config)
        assert store.value("title") == "Printer on fire"
        assert store.value("body") == "Please help"
        assert store.value("priority_id") == "3"

    def test_dirty_body_is_kept_but_title_overwritten(self, engine, store, agent, config):
        """Should protect dirty content except for always-overwrite fields."""
        store.user_edit("title", "My title")
        store.user_edit("body", "My description")
        template = make_template({
            "ticket.title": {"value": "Template title"},
            "article.body": {"value": "Template body"},
        })
        engine.apply(template, store, agent, NOW, config)
        assert store.value("title") == "Template title"
        assert store.value("body") == "My description"

    def test_dirty_exempt_fields(self, engine, store, agent):
        """Should overwrite dirty fields the configuration exempts."""
        store.user_edit("body", "My description")
        config = EvaluationConfig(dirty_exempt_fields=frozenset({"body"}))
        engine.apply(make_template({"article.body": {"value": "Template body"}}), store, agent, NOW, config)
        assert store.value("body") == "Template body"

    def test_merge_keeps_dirty_flags(self, engine, store, agent, config):
        """Should not change dirty flags when applying a template."""
        store.user_edit("title", "My title")
        engine.apply(make_template({"ticket.title": {"value": "T"}, "ticket.cc": {"value": "a@b"}}), store, agent, NOW, config)
        assert store.get("title").dirty is True
        assert store.get("cc").dirty is False

    def test_value_is_truncated(self, engine, store, agent, config):
        """Should truncate template text to max length."""
        engine.apply(make_template({"ticket.maxtest": {"value": "12345678"}}), store, agent, NOW, config)
        assert store.value("maxtest") == "123"

    def test_unknown_key_is_skipped(self, engine, store, agent, config):
        """Should apply the remaining options when one key is unknown."""
        template = make_template({
            "ticket.nonexistent": {"value": "x"},
            "ticket.title": {"value": "Printer"},
        })
        changes = engine.apply(template, store, agent, NOW, config)
        assert set(changes) == {"title"}

    def test_value_completion_sets_display(self, engine, store, agent, config):
        """Should carry the display label of a reference value."""
        template = make_template({
            "ticket.customer_id": {"value": "42", "value_completion": "Nicole Braun <nicole.braun@example.com>"},
        })
        engine.apply(template, store, agent, NOW, config)
        state = store.get("customer_id")
        assert state.value == "42"
        assert state.display == "Nicole Braun <nicole.braun@example.com>"

    def test_apply_is_one_revision(self, engine, store, agent, config):
        """Should commit a whole template as a single mutation."""
        template = make_template({
            "ticket.title": {"value": "Printer"},
            "ticket.priority_id": {"value": "3"},
            "ticket.tags": {"value": "foo"},
        })
        engine.apply(template, store, agent, NOW, config)
        assert store.revision == 1

    def test_merge_does_not_write(self, engine, store, agent, config):
        """Should only compute patches in merge()."""
        patches = engine.merge(make_template({"ticket.title": {"value": "Printer"}}), store, agent, NOW, config)
        assert patches["title"].value == "Printer"
        assert store.value("title") is None
        assert store.revision == 0


class TestTagMerge:
    """Test tag options inside templates."""

    def test_reapplying_to_clean_form_replaces_tags(self, engine, store, agent, config):
        """Should swap template tags when switching templates on a clean form."""
        engine.apply(make_template({"ticket.tags": {"value": "foo, bar", "operator": "add"}}), store, agent, NOW, config)
        engine.apply(make_template({"ticket.tags": {"value": "baz", "operator": "add"}}), store, agent, NOW, config)
        assert store.value("tags") == ["baz"]

    def test_user_tags_are_merged(self, engine, store, agent, config):
        """Should add template tags to tags the user entered."""
        store.user_edit("tags", "baz, qux, foo")
        engine.apply(make_template({"ticket.tags": {"value": "foo, bar", "operator": "add"}}), store, agent, NOW, config)
        assert store.value("tags") == ["baz", "qux", "foo", "bar"]

    def test_remove_from_user_tags(self, engine, store, agent, config):
        """Should remove template tags from tags the user entered."""
        store.user_edit("tags", "foo, bar, baz, qux")
        engine.apply(make_template({"ticket.tags": {"value": "foo, bar", "operator": "remove"}}), store, agent, NOW, config)
        assert store.value("tags") == ["baz", "qux"]


class TestDateMerge:
    """Test date options inside templates."""

    def test_relative_datetime(self, engine, store, agent, config):
        """Should resolve a relative datetime against now."""
        template = make_template({"ticket.pending_time": {"value": "1", "operator": "relative", "range": "month"}})
        now = datetime(2024, 1, 31, 9, 5, 30, tzinfo=timezone.utc)
        engine.apply(template, store, agent, now, config)
        assert store.value("pending_time") == datetime(2024, 2, 29, 9, 5, tzinfo=timezone.utc)

    def test_dirty_date_is_overwritten(self, engine, store, agent, config):
        """Should overwrite dates whatever the dirty flag says."""
        store.user_edit("pending_time", "2030-01-01T00:00:00+00:00")
        template = make_template({"ticket.pending_time": {"value": "2024-05-01T12:00:00Z", "operator": "static"}})
        engine.apply(template, store, agent, NOW, config)
        assert store.value("pending_time") == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_malformed_date_clears_field(self, engine, store, agent, config):
        """Should clear the field when the date spec is malformed."""
        store.user_edit("pending_time", "2030-01-01T00:00:00+00:00")
        template = make_template({"ticket.pending_time": {"value": "abc", "operator": "relative", "range": "day"}})
        engine.apply(template, store, agent, NOW, config)
        assert store.value("pending_time") is None


class TestPermissionGating:
    """Test permission-gated reference fields."""

    @pytest.fixture
    def gated_engine(self, registry, dates):
        authorization = StaticAuthorization({"agent_1": {"group_id": ["1"], "owner_id": ["10"]}})
        return TemplateMergeEngine(registry, dates, authorization=authorization)

    def test_unpermitted_owner_stays_unset(self, gated_engine, store, agent, config):
        """Should drop the owner silently when the user may not assign it."""
        template = make_template({
            "ticket.group_id": {"value": "1"},
            "ticket.owner_id": {"value": "99"},
        })
        gated_engine.apply(template, store, agent, NOW, config)
        assert store.value("group_id") == "1"
        assert store.value("owner_id") is None

    def test_permitted_owner_is_set(self, gated_engine, store, agent, config):
        """Should apply gated values the user may assign."""
        gated_engine.apply(make_template({"ticket.owner_id": {"value": "10"}}), store, agent, NOW, config)
        assert store.value("owner_id") == "10"

    def test_unpermitted_stale_value_is_cleared(self, gated_engine, store, agent, config):
        """Should clear a previously set value that is itself not permitted."""
        gated_engine.apply(make_template({"ticket.owner_id": {"value": "10"}}), store, agent, NOW, config)
        other = StaticAuthorization({"agent_1": {"owner_id": ["20"]}})
        gated_engine.authorization = other
        gated_engine.apply(make_template({"ticket.owner_id": {"value": "99"}}), store, agent, NOW, config)
        assert store.value("owner_id") is None
