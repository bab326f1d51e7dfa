"""Templates and the Template Merge Engine.

A template is a named, pre-authored bundle of field values. Applying it merges
each option into the live form according to the field's type:

- scalar fields: a clean field is overwritten; a dirty field keeps the user's
  content unless its descriptor role is ALWAYS_OVERWRITE (e.g. the title) or
  the configuration exempts it
- tag lists: delegated to the TagMergeResolver
- date/datetime fields: delegated to the DateValueResolver and always
  overwritten, whatever the dirty flag says
- permission-gated fields: the value is only applied when the authorization
  provider permits it for the acting user; otherwise it is dropped silently

The merge is computed against the current state and committed to the store as
a single mutation, so the core workflow never sees a half-applied template.
Template writes never mark fields dirty.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Set

from typing_extensions import Protocol

from formweave.config import EvaluationConfig
from formweave.dates import DateValueResolver
from formweave.errors import InvalidDefinitionError
from formweave.registry import FieldDescriptor, FieldRegistry, is_empty
from formweave.store import FieldPatch, FormFieldState, FormStateStore
from formweave.tags import TagMergeResolver, parse_tags
from formweave.types import Actor, ChangeSource, FieldType, MergeRole
from formweave.validation import ValidationEngine

logger = logging.getLogger(__name__)


TEMPLATE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": ["string", "integer"]},
        "name": {"type": "string"},
        "active": {"type": "boolean"},
        "options": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "operator": {"type": ["string", "null"]},
                    "range": {"type": ["string", "null"]},
                    "value_completion": {"type": ["string", "null"]},
                },
            },
        },
    },
    "required": ["id", "options"],
}


@dataclass(frozen=True)
class TemplateFieldOption:
    """One field entry of a template.

    Attributes:
        value: The template value (string, list, number or None)
        operator: Merge operator; its domain depends on the field type
        range: Relative date unit, for date fields with the relative operator
        value_completion: Optional display label for reference values
    """
    value: Any = None
    operator: Optional[str] = None
    range: Optional[str] = None
    value_completion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"value": self.value}
        if self.operator is not None:
            result["operator"] = self.operator
        if self.range is not None:
            result["range"] = self.range
        if self.value_completion is not None:
            result["value_completion"] = self.value_completion
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateFieldOption":
        return cls(
            value=data.get("value"),
            operator=data.get("operator"),
            range=data.get("range"),
            value_completion=data.get("value_completion"),
        )


@dataclass(frozen=True)
class Template:
    """A named, reusable bundle of field values.

    Attributes:
        id: Template identifier
        name: Display name
        active: Inactive templates are not offered and cannot be applied
        options: Ordered mapping of field key to option

    Examples:
        >>> template = Template.from_dict({
        ...     "id": "1",
        ...     "name": "Printer",
        ...     "options": {"ticket.title": {"value": "Printer on fire"}},
        ... })
        >>> template.options["ticket.title"].value
        'Printer on fire'
    """
    id: str
    name: str = ""
    active: bool = True
    options: Mapping[str, TemplateFieldOption] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "active": self.active,
            "options": {key: option.to_dict() for key, option in self.options.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        """Create Template from dict.

        Raises:
            InvalidDefinitionError: If the dict does not match TEMPLATE_SCHEMA
        """
        result = ValidationEngine(TEMPLATE_SCHEMA).validate(data)
        if not result.is_valid:
            raise InvalidDefinitionError("template", result.errors)
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            active=data.get("active", True),
            options={
                key: TemplateFieldOption.from_dict(option)
                for key, option in data["options"].items()
            },
        )


class AuthorizationProvider(Protocol):
    """Decides whether the acting user may set a gated field to a value."""

    def is_permitted(self, user: Actor, field_key: str, candidate_value: Any) -> bool:
        ...


class AllowAll:
    """Authorization provider that permits every value."""

    def is_permitted(self, user: Actor, field_key: str, candidate_value: Any) -> bool:
        return True


class StaticAuthorization:
    """Authorization backed by a mapping of user id -> field key -> permitted values.

    Fields missing from a user's mapping are not permitted at all.

    Examples:
        >>> from formweave.types import ActorKind
        >>> auth = StaticAuthorization({"agent_1": {"group_id": ["1"]}})
        >>> agent = Actor(kind=ActorKind.AGENT, id="agent_1")
        >>> auth.is_permitted(agent, "group_id", "1")
        True
        >>> auth.is_permitted(agent, "group_id", "2")
        False
    """

    def __init__(self, permissions: Mapping[str, Mapping[str, Any]]):
        self._permissions = {
            user_id: {key: {str(v) for v in values} for key, values in fields_.items()}
            for user_id, fields_ in permissions.items()
        }

    def is_permitted(self, user: Actor, field_key: str, candidate_value: Any) -> bool:
        permitted = self._permissions.get(user.id, {}).get(field_key)
        if permitted is None:
            return False
        return str(candidate_value) in permitted


class TemplateMergeEngine:
    """Merge templates into form state.

    Attributes:
        registry: Field descriptors used to dispatch per field type
        dates: Resolver for date/datetime options
        tags: Resolver for tag-list options
        authorization: Provider consulted for permission-gated fields
    """

    def __init__(
        self,
        registry: FieldRegistry,
        dates: DateValueResolver,
        tags: Optional[TagMergeResolver] = None,
        authorization: Optional[AuthorizationProvider] = None,
    ):
        self.registry = registry
        self.dates = dates
        self.tags = tags or TagMergeResolver()
        self.authorization = authorization or AllowAll()

    def merge(
        self,
        template: Template,
        store: FormStateStore,
        user: Actor,
        now: datetime,
        config: EvaluationConfig,
    ) -> Dict[str, FieldPatch]:
        """Compute the patches applying ``template`` would commit.

        Reads the store but never writes it. Unknown keys are skipped.
        """
        patches: Dict[str, FieldPatch] = {}
        for key, option in template.options.items():
            descriptor = self.registry.describe(key)
            if descriptor is None:
                logger.warning("Template %s names unknown field %r, skipping", template.id, key)
                continue
            state = store.get(descriptor.name)
            patch = self._merge_field(descriptor, state, option, user, now, config)
            if patch is None or patch.is_empty():
                continue
            previous = patches.get(descriptor.name)
            patches[descriptor.name] = previous.merged(patch) if previous else patch
        return patches

    def apply(
        self,
        template: Template,
        store: FormStateStore,
        user: Actor,
        now: datetime,
        config: EvaluationConfig,
    ) -> Dict[str, Set[str]]:
        """Merge ``template`` and commit the result as one store mutation.

        Returns:
            Mapping of changed key to the set of changed attributes
        """
        patches = self.merge(template, store, user, now, config)
        changes = store.commit(patches, ChangeSource.TEMPLATE)
        logger.info(
            "Applied template %s: %d field(s) changed at revision %d",
            template.id, len(changes), store.revision,
        )
        return changes

    def _merge_field(
        self,
        descriptor: FieldDescriptor,
        state: FormFieldState,
        option: TemplateFieldOption,
        user: Actor,
        now: datetime,
        config: EvaluationConfig,
    ) -> Optional[FieldPatch]:
        if descriptor.type.is_temporal:
            return FieldPatch(value=self.dates.resolve(option, now, descriptor.type))

        if descriptor.type is FieldType.TAG_LIST:
            merged = self.tags.resolve(state.value, parse_tags(option.value), option.operator, state.dirty)
            return FieldPatch(value=merged)

        if state.dirty and not self._overwrites_dirty(descriptor, config):
            logger.debug("Keeping user content of dirty field %s", descriptor.name)
            return None

        value = descriptor.coerce(option.value)
        if descriptor.permission_gated and not is_empty(value):
            if not self.authorization.is_permitted(user, descriptor.name, value):
                logger.info(
                    "Dropping template value for %s: not permitted for %s",
                    descriptor.name, user.id,
                )
                return self._clear_unpermitted(descriptor, state, user)
        return FieldPatch(value=value, display=option.value_completion)

    def _overwrites_dirty(self, descriptor: FieldDescriptor, config: EvaluationConfig) -> bool:
        return (
            descriptor.role is MergeRole.ALWAYS_OVERWRITE
            or descriptor.name in config.dirty_exempt_fields
        )

    def _clear_unpermitted(
        self,
        descriptor: FieldDescriptor,
        state: FormFieldState,
        user: Actor,
    ) -> Optional[FieldPatch]:
        if is_empty(state.value) or self.authorization.is_permitted(user, descriptor.name, state.value):
            return None
        return FieldPatch(value=descriptor.empty_value(), display=None)


__all__ = [
    "Template",
    "TemplateFieldOption",
    "TEMPLATE_SCHEMA",
    "AuthorizationProvider",
    "AllowAll",
    "StaticAuthorization",
    "TemplateMergeEngine",
]
