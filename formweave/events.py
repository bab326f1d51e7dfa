"""Events for formweave.

Two families of events live here:
- input events (OpenForm, UserEdit, ApplyTemplate, LookupResolved,
  LookupFailed, ResetForm, Evaluate) that an event source posts into the
  scheduler queue
- FormEvent audit records the scheduler publishes through an EventEmitter
  once an input event has been processed

The audit stream is append-only and serializes to JSONL.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .templates import Template
from .types import Actor, EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenForm:
    """The form is opened; ``defaults`` were resolved at this moment."""
    defaults: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class UserEdit:
    """The user typed or selected a value."""
    key: str
    value: Any


@dataclass(frozen=True)
class ApplyTemplate:
    """The user picked a template to apply."""
    template: Template


@dataclass(frozen=True)
class LookupResolved:
    """An external lookup for ``key`` completed.

    Attributes:
        revision: Store revision the lookup was issued against
        key: Field whose input started the lookup
        result: Option ids the lookup returned
    """
    revision: int
    key: str
    result: List[str]


@dataclass(frozen=True)
class LookupFailed:
    """An external lookup for ``key`` failed."""
    revision: int
    key: str
    reason: str


@dataclass(frozen=True)
class ResetForm:
    """Discard user input and restore defaults.

    ``defaults`` replaces the stored defaults when given, so relative date
    defaults can be resolved against the time of the reset.
    """
    defaults: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Evaluate:
    """Run the core workflow without any other change."""
    reason: str = ""


InputEvent = Union[OpenForm, UserEdit, ApplyTemplate, LookupResolved, LookupFailed, ResetForm, Evaluate]


@dataclass(frozen=True)
class FormEvent:
    """A single audit record of the form session.

    Attributes:
        event_id: Unique event identifier (e.g., "evt_01H8...")
        type: Event type from EventType enum
        form_id: ID of the form session this event relates to
        ts: UTC timestamp when the event occurred
        actor: Actor the session runs for
        revision: Store revision after the event was processed
        payload: Optional event-specific data (changed fields, errors, ...)

    Examples:
        >>> from datetime import datetime, timezone
        >>> from formweave.types import ActorKind
        >>> event = FormEvent(
        ...     event_id="evt_001",
        ...     type=EventType.FIELD_UPDATED,
        ...     form_id="form_001",
        ...     ts=datetime.now(timezone.utc),
        ...     actor=Actor(kind=ActorKind.AGENT, id="agent_1"),
        ...     revision=3,
        ... )
        >>> event.to_dict()["type"]
        'field.updated'
    """
    event_id: str
    type: EventType
    form_id: str
    ts: datetime
    actor: Actor
    revision: int
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if isinstance(self.type, str):
            object.__setattr__(self, "type", EventType(self.type))

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "type": self.type.value,
            "formId": self.form_id,
            "ts": self.ts.isoformat(),
            "actor": self.actor.to_dict(),
            "revision": self.revision,
        }
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    def to_jsonl(self) -> str:
        """Convert event to a single-line JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormEvent":
        """Create FormEvent from dictionary (camelCase keys)."""
        ts = datetime.fromisoformat(data["ts"].replace("Z", "+00:00"))
        return cls(
            event_id=data["eventId"],
            type=EventType(data["type"]),
            form_id=data["formId"],
            ts=ts,
            actor=Actor.from_dict(data["actor"]),
            revision=data["revision"],
            payload=data.get("payload"),
        )


EventListener = Callable[[FormEvent], None]
"""Listener callback. Called synchronously, in registration order."""


class EventEmitter:
    """Dispatch audit events to listeners.

    Features:
    - Type-specific subscriptions and wildcard subscriptions
    - Synchronous dispatch in registration order
    - Error isolation: a failing listener is logged and the others still run
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[EventListener]] = {}
        self._any_listeners: List[EventListener] = []

    def on(self, event_type: EventType, listener: EventListener) -> None:
        """Subscribe to a specific event type."""
        self._listeners.setdefault(event_type, []).append(listener)

    def on_any(self, listener: EventListener) -> None:
        """Subscribe to all event types."""
        self._any_listeners.append(listener)

    def off(self, event_type: EventType, listener: EventListener) -> None:
        """Unsubscribe from a specific event type."""
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def off_any(self, listener: EventListener) -> None:
        """Unsubscribe from the wildcard subscription."""
        if listener in self._any_listeners:
            self._any_listeners.remove(listener)

    def emit(self, event: FormEvent) -> None:
        """Dispatch an event to its type listeners, then to wildcard listeners."""
        for listener in list(self._listeners.get(event.type, [])) + list(self._any_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, event.type.value)

    def clear(self) -> None:
        """Remove all event listeners."""
        self._listeners.clear()
        self._any_listeners.clear()

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        """Count listeners for ``event_type``, or all listeners when None."""
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        return len(self._any_listeners) + sum(len(ls) for ls in self._listeners.values())


__all__ = [
    "OpenForm",
    "UserEdit",
    "ApplyTemplate",
    "LookupResolved",
    "LookupFailed",
    "ResetForm",
    "Evaluate",
    "InputEvent",
    "FormEvent",
    "EventListener",
    "EventEmitter",
]
