"""Field Descriptor Registry.

Static, read-only metadata for every field of a form: value type, object,
constraints, screen defaults and template merge role. Every other component
dispatches on the descriptor it gets back from ``FieldRegistry.describe``.

Keys may be bare (``title``) or object-qualified (``ticket.title``,
``article.body``). A key that does not resolve is a recoverable condition:
``describe`` returns None and the caller skips the entry.
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Optional

from formweave.errors import InvalidDefinitionError
from formweave.types import FieldType, MergeRole
from formweave.validation import ValidationEngine


FIELD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "type": {"enum": [t.value for t in FieldType]},
        "object": {"type": "string", "minLength": 1},
        "label": {"type": ["string", "null"]},
        "maxLength": {"type": ["integer", "null"], "minimum": 1},
        "options": {"type": ["array", "null"], "items": {"type": "string"}},
        "filter": {"type": ["array", "null"], "items": {"type": "string"}},
        "shown": {"type": "boolean"},
        "required": {"type": "boolean"},
        "role": {"enum": [r.value for r in MergeRole]},
        "permissionGated": {"type": "boolean"},
    },
    "required": ["name", "type"],
}


def is_empty(value: Any) -> bool:
    """Return True for the values that count as an unset field."""
    return value is None or value == "" or value == [] or value == ()


def unique_strings(values: Any) -> List[str]:
    """Normalize a value to a de-duplicated list of non-empty strings, keeping order."""
    if is_empty(values):
        return []
    if isinstance(values, str):
        values = [values]
    result: List[str] = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in result:
            result.append(text)
    return result


@dataclass(frozen=True)
class FieldDescriptor:
    """Static metadata for one form field.

    Attributes:
        name: Bare field key (e.g., "title", "tags", "pending_time")
        type: Value type of the field
        object: Record object the field belongs to ("ticket", "article")
        label: Optional display label
        max_length: Optional maximum length for text values
        options: Optional full option id list for select-like fields
        filter: Optional default allowed-values filter (screen level)
        default: Optional default value applied when the form opens
        shown: Whether the field is visible before any workflow runs
        required: Whether the field is required before any workflow runs
        role: Template merge bucket for scalar fields
        permission_gated: Whether template values need authorization

    Examples:
        >>> d = FieldDescriptor(name="title", type=FieldType.TEXT, role=MergeRole.ALWAYS_OVERWRITE)
        >>> d.qualified_key
        'ticket.title'
    """
    name: str
    type: FieldType
    object: str = "ticket"
    label: Optional[str] = None
    max_length: Optional[int] = None
    options: Optional[List[str]] = None
    filter: Optional[FrozenSet[str]] = None
    default: Any = None
    shown: bool = True
    required: bool = False
    role: MergeRole = MergeRole.PROTECT_DIRTY
    permission_gated: bool = False

    def __post_init__(self):
        if isinstance(self.type, str):
            object.__setattr__(self, "type", FieldType(self.type))
        if isinstance(self.role, str):
            object.__setattr__(self, "role", MergeRole(self.role))
        if self.filter is not None and not isinstance(self.filter, frozenset):
            object.__setattr__(self, "filter", frozenset(str(v) for v in self.filter))
        object.__setattr__(self, "object", self.object.lower())

    @property
    def qualified_key(self) -> str:
        return f"{self.object}.{self.name}"

    def empty_value(self) -> Any:
        """Return the cleared value for this field type."""
        return [] if self.type.is_multi_valued else None

    def coerce(self, value: Any) -> Any:
        """Normalize a raw input value to this field's value representation.

        Text values are truncated to max_length; multi-valued fields become
        de-duplicated string lists; empty input becomes the empty value.
        Tag strings are split on commas. Date and datetime values are returned
        as given; FormStateStore.coerce parses them with the date resolver.
        """
        if is_empty(value):
            return self.empty_value()
        if self.type is FieldType.TAG_LIST:
            if isinstance(value, str):
                value = value.split(",")
            return unique_strings(value)
        if self.type is FieldType.MULTI_TREE_SELECT:
            return unique_strings(value)
        if self.type.is_temporal:
            return value
        if isinstance(value, (list, tuple)):
            # Single-valued fields keep the first selection.
            value = value[0] if value else None
            if is_empty(value):
                return None
        if self.type in (FieldType.TEXT, FieldType.FREEFORM):
            value = str(value)
            if self.max_length is not None:
                value = value[: self.max_length]
            return value
        return str(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "object": self.object,
            "shown": self.shown,
            "required": self.required,
            "role": self.role.value,
            "permissionGated": self.permission_gated,
        }
        if self.label is not None:
            result["label"] = self.label
        if self.max_length is not None:
            result["maxLength"] = self.max_length
        if self.options is not None:
            result["options"] = list(self.options)
        if self.filter is not None:
            result["filter"] = sorted(self.filter)
        if self.default is not None:
            result["default"] = self.default
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDescriptor":
        """Create FieldDescriptor from dict.

        Raises:
            InvalidDefinitionError: If the dict does not match FIELD_SCHEMA
        """
        result = ValidationEngine(FIELD_SCHEMA).validate(data)
        if not result.is_valid:
            raise InvalidDefinitionError("field", result.errors)
        return cls(
            name=data["name"],
            type=FieldType(data["type"]),
            object=data.get("object", "ticket"),
            label=data.get("label"),
            max_length=data.get("maxLength"),
            options=data.get("options"),
            filter=frozenset(data["filter"]) if data.get("filter") is not None else None,
            default=data.get("default"),
            shown=data.get("shown", True),
            required=data.get("required", False),
            role=MergeRole(data.get("role", MergeRole.PROTECT_DIRTY.value)),
            permission_gated=data.get("permissionGated", False),
        )


class FieldRegistry:
    """Read-only lookup of field descriptors by key.

    Examples:
        >>> registry = FieldRegistry([FieldDescriptor(name="body", type=FieldType.FREEFORM, object="article")])
        >>> registry.describe("article.body").name
        'body'
        >>> registry.describe("ticket.body") is None
        True
    """

    def __init__(self, descriptors: List[FieldDescriptor]):
        self._descriptors: Dict[str, FieldDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                raise ValueError(f"Duplicate field descriptor: {descriptor.name}")
            self._descriptors[descriptor.name] = descriptor

    def describe(self, key: str) -> Optional[FieldDescriptor]:
        """Look up the descriptor for a bare or object-qualified key."""
        descriptor = self._descriptors.get(key)
        if descriptor is not None:
            return descriptor
        if "." in key:
            prefix, name = key.split(".", 1)
            descriptor = self._descriptors.get(name)
            if descriptor is not None and descriptor.object == prefix.lower():
                return descriptor
        return None

    def resolve_key(self, key: str) -> Optional[str]:
        """Return the canonical bare key for ``key``, or None when unknown."""
        descriptor = self.describe(key)
        return descriptor.name if descriptor is not None else None

    def keys(self) -> List[str]:
        return list(self._descriptors)

    def __iter__(self) -> Iterator[FieldDescriptor]:
        return iter(self._descriptors.values())

    def __contains__(self, key: str) -> bool:
        return self.describe(key) is not None

    def __len__(self) -> int:
        return len(self._descriptors)

    @classmethod
    def from_dict(cls, data: List[Dict[str, Any]]) -> "FieldRegistry":
        return cls([FieldDescriptor.from_dict(item) for item in data])


__all__ = [
    "FieldDescriptor",
    "FieldRegistry",
    "FIELD_SCHEMA",
    "is_empty",
    "unique_strings",
]
