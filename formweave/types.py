"""Core type definitions for the formweave reconciliation engine.

This module defines the fundamental types used throughout formweave:
- FieldType: Value types a form field can carry
- MergeRole: How a scalar field reacts to template application when dirty
- TagOperator / DateOperator / TimeRange: Template merge operators
- ConditionOperator / ActionOperator: Core workflow rule vocabulary
- WorkflowState: Evaluator lifecycle states
- EventType: Audit event types for the form event stream
- FieldErrorCode: Validation error codes for individual fields
- Actor: Identity of the user working on the form

These closed sets replace string comparisons at every dispatch site, so an
unknown operator is rejected once, at load time.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class FieldType(str, Enum):
    """Value types of form fields."""
    TEXT = "text"
    FREEFORM = "freeform"
    DATE = "date"
    DATETIME = "datetime"
    SELECT = "select"
    TREE_SELECT = "tree_select"
    MULTI_TREE_SELECT = "multi_tree_select"
    TAG_LIST = "tag_list"

    @property
    def is_multi_valued(self) -> bool:
        return self in (FieldType.MULTI_TREE_SELECT, FieldType.TAG_LIST)

    @property
    def is_temporal(self) -> bool:
        return self in (FieldType.DATE, FieldType.DATETIME)


class MergeRole(str, Enum):
    """Template merge policy bucket of a scalar field.

    PROTECT_DIRTY fields (e.g. the article body) keep user-typed content.
    ALWAYS_OVERWRITE fields (e.g. the title) take the template value every time.
    """
    PROTECT_DIRTY = "protect_dirty"
    ALWAYS_OVERWRITE = "always_overwrite"


class TagOperator(str, Enum):
    """Tag-list template operators. A missing operator means ADD (legacy)."""
    ADD = "add"
    REMOVE = "remove"


class DateOperator(str, Enum):
    """Date/datetime template operators. A missing operator means STATIC."""
    STATIC = "static"
    RELATIVE = "relative"


class TimeRange(str, Enum):
    """Units of a relative date specification."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class ConditionOperator(str, Enum):
    """Comparison operators of a workflow rule condition."""
    IS = "is"
    IS_NOT = "is not"
    NOT = "not"
    CONTAINS = "contains"
    CONTAINS_NOT = "contains not"
    IS_SET = "is set"
    NOT_SET = "not set"
    IS_ONE_OF = "is one of"
    IS_NOT_ONE_OF = "is not one of"
    GREATER_THAN = "greater than"
    GREATER_THAN_OR_EQUAL = "greater than or equal"
    LESS_THAN = "less than"
    LESS_THAN_OR_EQUAL = "less than or equal"


class ActionOperator(str, Enum):
    """Actions a workflow rule can perform on a field."""
    SHOW = "show"
    HIDE = "hide"
    REMOVE = "remove"
    SELECT = "select"
    SET_MANDATORY = "set_mandatory"
    SET_OPTIONAL = "set_optional"
    FILTER = "filter"


class WorkflowState(str, Enum):
    """Core workflow evaluator states.

    IDLE -> EVALUATING -> APPLYING -> (IDLE | EVALUATING)
    """
    IDLE = "idle"
    EVALUATING = "evaluating"
    APPLYING = "applying"


class ChangeSource(str, Enum):
    """Who committed a store mutation."""
    USER = "user"
    TEMPLATE = "template"
    WORKFLOW = "workflow"
    LOOKUP = "lookup"
    SYSTEM = "system"


class EventType(str, Enum):
    """Audit event types for the form event stream."""
    FORM_OPENED = "form.opened"
    FORM_RESET = "form.reset"
    FIELD_UPDATED = "field.updated"
    TEMPLATE_APPLIED = "template.applied"
    WORKFLOW_EVALUATED = "workflow.evaluated"
    WORKFLOW_DIVERGED = "workflow.diverged"
    LOOKUP_APPLIED = "lookup.applied"
    LOOKUP_DISCARDED = "lookup.discarded"
    LOOKUP_FAILED = "lookup.failed"
    FORM_SUBMITTED = "form.submitted"
    SUBMIT_REJECTED = "form.submit_rejected"


class FieldErrorCode(str, Enum):
    """Validation error codes for individual field failures."""
    REQUIRED = "required"
    INVALID_TYPE = "invalid_type"
    INVALID_FORMAT = "invalid_format"
    INVALID_VALUE = "invalid_value"
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    CUSTOM = "custom"


class ActorKind(str, Enum):
    """Actor type classification."""
    AGENT = "agent"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Identity of the user working on the form.

    Handed to the authorization provider when gated template values are applied.

    Attributes:
        kind: Type of actor (agent, customer, or system)
        id: Unique identifier for this actor
        name: Optional display name
        metadata: Optional arbitrary data (e.g., {"groups": ["1", "2"]})

    Examples:
        >>> agent = Actor(kind=ActorKind.AGENT, id="agent_1", name="Jane Doe")
        >>> agent.to_dict()["kind"]
        'agent'
    """
    kind: ActorKind
    id: str
    name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "kind": self.kind.value if isinstance(self.kind, ActorKind) else self.kind,
            "id": self.id,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.metadata:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        """Create Actor from dict."""
        kind = data["kind"]
        if isinstance(kind, str):
            kind = ActorKind(kind)
        return cls(
            kind=kind,
            id=data["id"],
            name=data.get("name"),
            metadata=data.get("metadata", {}),
        )


SYSTEM_ACTOR = Actor(kind=ActorKind.SYSTEM, id="system")


__all__ = [
    "FieldType",
    "MergeRole",
    "TagOperator",
    "DateOperator",
    "TimeRange",
    "ConditionOperator",
    "ActionOperator",
    "WorkflowState",
    "ChangeSource",
    "EventType",
    "FieldErrorCode",
    "ActorKind",
    "Actor",
    "SYSTEM_ACTOR",
]
