"""Form State Store.

Holds the live state of every field of one form session: value, dirty flag,
visibility, required flag, options filter and display label, plus a revision
counter that strictly increases on every committed mutation.

Mutations come in two shapes:
- ``user_edit``: a single user-typed value; the only path that sets ``dirty``
- ``commit``: a batch of FieldPatch objects written by the template engine,
  the core workflow or a lookup completion, applied as one mutation
"""

import copy
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set

from dateutil import tz

from formweave.dates import DateValueResolver
from formweave.registry import FieldDescriptor, FieldRegistry, is_empty
from formweave.types import ChangeSource

logger = logging.getLogger(__name__)


class _Unset:
    """Marker for patch attributes that leave the field untouched."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class FormFieldState:
    """Live state of one form field.

    Attributes:
        key: Bare field key
        value: Current value (None / [] when empty)
        dirty: Whether the user has populated the field since open or reset
        visible: Whether the field is shown
        required: Whether the field must be filled on submit
        options_filter: Allowed option ids, or None for no restriction
        options: Option ids supplied by the last external lookup, or None
        display: Optional label for the value (template value completion)
        revision: Store revision of the last change to ``value``
    """
    key: str
    value: Any = None
    dirty: bool = False
    visible: bool = True
    required: bool = False
    options_filter: Optional[FrozenSet[str]] = None
    options: Optional[FrozenSet[str]] = None
    display: Optional[str] = None
    revision: int = 0

    def copy(self) -> "FormFieldState":
        return replace(self, value=copy.deepcopy(self.value))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization. Dates become ISO-8601 strings."""
        value = self.value
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        result: Dict[str, Any] = {
            "key": self.key,
            "value": value,
            "dirty": self.dirty,
            "visible": self.visible,
            "required": self.required,
            "revision": self.revision,
        }
        if self.options_filter is not None:
            result["optionsFilter"] = sorted(self.options_filter)
        if self.options is not None:
            result["options"] = sorted(self.options)
        if self.display is not None:
            result["display"] = self.display
        return result


@dataclass(frozen=True)
class FieldPatch:
    """A partial update of one field's state.

    Attributes left as UNSET do not touch the field.

    Examples:
        >>> patch = FieldPatch(visible=False, required=False)
        >>> patch.is_empty()
        False
        >>> FieldPatch().is_empty()
        True
    """
    value: Any = UNSET
    visible: Any = UNSET
    required: Any = UNSET
    options_filter: Any = UNSET
    options: Any = UNSET
    display: Any = UNSET

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is UNSET for f in fields(self))

    def merged(self, other: "FieldPatch") -> "FieldPatch":
        """Return a patch where attributes set in ``other`` override this one."""
        updates = {f.name: getattr(other, f.name) for f in fields(other) if getattr(other, f.name) is not UNSET}
        return replace(self, **updates)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            attr = getattr(self, f.name)
            if attr is UNSET:
                continue
            if isinstance(attr, frozenset):
                attr = sorted(attr)
            elif hasattr(attr, "isoformat"):
                attr = attr.isoformat()
            result[f.name] = attr
        return result


_PATCH_FIELDS = ("value", "visible", "required", "options_filter", "options", "display")


class FormStateStore:
    """Field state of one form session.

    Examples:
        >>> from formweave.registry import FieldDescriptor, FieldRegistry
        >>> from formweave.types import FieldType
        >>> registry = FieldRegistry([FieldDescriptor(name="title", type=FieldType.TEXT)])
        >>> store = FormStateStore(registry)
        >>> sorted(store.user_edit("title", "Printer on fire")["title"])
        ['dirty', 'value']
        >>> store.get("title").dirty
        True
        >>> store.revision
        1
    """

    def __init__(
        self,
        registry: FieldRegistry,
        defaults: Optional[Mapping[str, Any]] = None,
        dates: Optional[DateValueResolver] = None,
    ):
        self.registry = registry
        self.dates = dates or DateValueResolver(tz.UTC)
        self._defaults: Dict[str, Any] = dict(defaults or {})
        self._fields: Dict[str, FormFieldState] = {}
        self.revision = 0
        self._seed()

    def _seed(self) -> None:
        self._fields = {}
        for descriptor in self.registry:
            value = self._defaults.get(descriptor.name, descriptor.empty_value())
            self._fields[descriptor.name] = FormFieldState(
                key=descriptor.name,
                value=self.coerce(descriptor, value),
                visible=descriptor.shown,
                required=descriptor.required,
                options_filter=descriptor.filter,
                revision=self.revision,
            )

    def coerce(self, descriptor: FieldDescriptor, value: Any) -> Any:
        """Normalize ``value`` for ``descriptor``; dates go through the date resolver."""
        if descriptor.type.is_temporal:
            return self.dates.coerce(value, descriptor.type)
        return descriptor.coerce(value)

    def get(self, key: str) -> Optional[FormFieldState]:
        name = self.registry.resolve_key(key)
        return self._fields.get(name) if name is not None else None

    def value(self, key: str) -> Any:
        state = self.get(key)
        return state.value if state is not None else None

    def values(self) -> Dict[str, Any]:
        return {key: copy.deepcopy(state.value) for key, state in self._fields.items()}

    def snapshot(self) -> Dict[str, FormFieldState]:
        """Return a deep copy of every field state."""
        return {key: state.copy() for key, state in self._fields.items()}

    def __iter__(self) -> Iterator[FormFieldState]:
        return iter(self._fields.values())

    def keys(self) -> List[str]:
        return list(self._fields)

    def field_revision(self, key: str) -> int:
        state = self.get(key)
        return state.revision if state is not None else 0

    def user_edit(self, key: str, value: Any) -> Dict[str, Set[str]]:
        """Write a user-entered value.

        The value is coerced for the field type (e.g. truncated to max length;
        dates parsed into the session timezone, or cleared when unparseable).
        A non-empty value marks the field dirty; the flag stays set until reset.
        Unknown keys are ignored.

        Returns:
            Mapping of changed key to the set of changed attributes
        """
        descriptor = self.registry.describe(key)
        if descriptor is None:
            logger.warning("Ignoring edit of unknown field %r", key)
            return {}

        state = self._fields[descriptor.name]
        coerced = self.coerce(descriptor, value)
        changed: Set[str] = set()
        if coerced != state.value:
            changed.add("value")
        if not is_empty(coerced) and not state.dirty:
            changed.add("dirty")
        if not changed:
            return {}

        self.revision += 1
        if "value" in changed:
            state.value = coerced
            state.display = None
            state.revision = self.revision
        if "dirty" in changed:
            state.dirty = True
        logger.debug("User edit of %s committed at revision %d", descriptor.name, self.revision)
        return {descriptor.name: changed}

    def commit(self, patches: Mapping[str, FieldPatch], source: ChangeSource) -> Dict[str, Set[str]]:
        """Apply a batch of patches as one committed mutation.

        Engine writes never touch the dirty flag. The revision is bumped once
        when at least one attribute actually changes.

        Returns:
            Mapping of changed key to the set of changed attributes
        """
        changes: Dict[str, Set[str]] = {}
        pending: Dict[str, Dict[str, Any]] = {}
        for key, patch in patches.items():
            state = self.get(key)
            if state is None:
                logger.warning("Ignoring %s patch for unknown field %r", source.value, key)
                continue
            updates: Dict[str, Any] = {}
            for attr in _PATCH_FIELDS:
                new = getattr(patch, attr)
                if new is UNSET or new == getattr(state, attr):
                    continue
                updates[attr] = new
            if updates:
                pending[state.key] = updates
                changes[state.key] = set(updates)

        if not pending:
            return {}

        self.revision += 1
        for key, updates in pending.items():
            state = self._fields[key]
            for attr, new in updates.items():
                setattr(state, attr, copy.deepcopy(new))
            if "value" in updates:
                state.revision = self.revision
        logger.debug(
            "Committed %s changes to %s at revision %d",
            source.value, ", ".join(sorted(pending)), self.revision,
        )
        return changes

    def reset(self, defaults: Optional[Mapping[str, Any]] = None) -> None:
        """Restore defaults and clear every dirty flag.

        Args:
            defaults: Replaces the stored defaults when given
        """
        if defaults is not None:
            self._defaults = dict(defaults)
        self.revision += 1
        self._seed()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "revision": self.revision,
            "fields": {key: state.to_dict() for key, state in self._fields.items()},
        }


__all__ = [
    "FormFieldState",
    "FieldPatch",
    "FormStateStore",
    "UNSET",
]
