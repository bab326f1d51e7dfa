"""FormSession orchestrator.

FormSession wires the registry, the store, the template merge engine, the core
workflow evaluator and the scheduler together for one record-creation form,
and is the API an embedding UI talks to.

Usage:
    >>> from formweave.registry import FieldDescriptor, FieldRegistry
    >>> from formweave.runtime import FormSession
    >>> from formweave.types import FieldType, MergeRole
    >>> registry = FieldRegistry([
    ...     FieldDescriptor(name="title", type=FieldType.TEXT, role=MergeRole.ALWAYS_OVERWRITE),
    ... ])
    >>> session = FormSession(object_name="Ticket", registry=registry)
    >>> session.open()["ok"]
    True
    >>> session.edit("title", "Printer on fire").ok
    True
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from formweave.config import EvaluationConfig
from formweave.dates import DateValueResolver
from formweave.errors import TemplateNotFoundError
from formweave.events import (
    ApplyTemplate,
    EventEmitter,
    FormEvent,
    InputEvent,
    LookupFailed,
    LookupResolved,
    OpenForm,
    ResetForm,
    UserEdit,
)
from formweave.registry import FieldRegistry, is_empty
from formweave.scheduler import Clock, EvaluationScheduler, EventOutcome, utc_now
from formweave.store import FormStateStore
from formweave.templates import AuthorizationProvider, Template, TemplateMergeEngine
from formweave.types import SYSTEM_ACTOR, Actor, EventType
from formweave.validation import ValidationEngine, build_submit_schema
from formweave.workflow import CoreWorkflowEvaluator, CoreWorkflowRule

logger = logging.getLogger(__name__)

SubmitHandler = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class LookupTicket:
    """Handle for an external lookup in flight.

    Attributes:
        key: Field whose input the lookup resolves
        revision: Store revision at the time the lookup was issued
    """
    key: str
    revision: int


def _serialize(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class FormSession:
    """One record-creation form session.

    Attributes:
        object_name: Record object of the form (e.g., "Ticket")
        registry: Field descriptors
        rules: Core workflow rules in declaration order
        templates: Known templates by id
        user: Actor working on the form
        config: Configuration snapshot used for new events
    """

    def __init__(
        self,
        object_name: str,
        registry: FieldRegistry,
        rules: Optional[Iterable[CoreWorkflowRule]] = None,
        templates: Optional[Iterable[Template]] = None,
        user: Optional[Actor] = None,
        authorization: Optional[AuthorizationProvider] = None,
        config: Optional[EvaluationConfig] = None,
        clock: Optional[Clock] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.object_name = object_name
        self.registry = registry
        self.rules = list(rules or [])
        self.templates: Dict[str, Template] = {t.id: t for t in (templates or [])}
        self.user = user or SYSTEM_ACTOR
        self.config = config or EvaluationConfig()
        self.clock = clock or utc_now
        self.emitter = emitter or EventEmitter()
        self.dates = DateValueResolver(self.config.tzinfo)
        self.store = FormStateStore(registry, self._defaults(), dates=self.dates)
        self.scheduler = EvaluationScheduler(
            store=self.store,
            merge_engine=TemplateMergeEngine(registry, self.dates, authorization=authorization),
            evaluator=CoreWorkflowEvaluator(registry, self.rules, object_name),
            user=self.user,
            config=self.config,
            clock=self.clock,
            emitter=self.emitter,
        )
        self._events: List[FormEvent] = []
        self.emitter.on_any(self._events.append)

    @property
    def form_id(self) -> str:
        return self.scheduler.form_id

    def _defaults(self) -> Dict[str, Any]:
        now = self.clock()
        defaults: Dict[str, Any] = {}
        for descriptor in self.registry:
            if is_empty(descriptor.default):
                continue
            if descriptor.type.is_temporal:
                defaults[descriptor.name] = self.dates.resolve_default(descriptor, now)
            else:
                defaults[descriptor.name] = descriptor.default
        return defaults

    def update_config(self, config: EvaluationConfig) -> None:
        """Use ``config`` for every event processed from now on."""
        self.config = config
        self.dates.tz = config.tzinfo
        self.scheduler.config = config

    def open(self) -> Dict[str, Any]:
        """Seed defaults as of now, run the core workflow and return the form state.

        Numeric date defaults are offsets from this moment, not from when the
        session was constructed.
        """
        outcome = self._dispatch(OpenForm(defaults=self._defaults()))
        response = self.get_form()
        response["ok"] = outcome is None or outcome.ok
        if outcome is not None and outcome.error is not None:
            response["error"] = outcome.error.to_dict()
        return response

    def available_templates(self) -> List[Template]:
        """Templates the user may pick: active ones only, in load order."""
        return [t for t in self.templates.values() if t.active]

    def edit(self, key: str, value: Any) -> Optional[EventOutcome]:
        return self._dispatch(UserEdit(key=key, value=value))

    def apply_template(self, template_id: str) -> Optional[EventOutcome]:
        """Apply a known template by id.

        Raises:
            TemplateNotFoundError: If the id is unknown
        """
        template = self.templates.get(str(template_id))
        if template is None:
            raise TemplateNotFoundError(str(template_id))
        return self._dispatch(ApplyTemplate(template=template))

    def begin_lookup(self, key: str) -> LookupTicket:
        """Record the revision an external lookup for ``key`` is issued against."""
        return LookupTicket(key=key, revision=self.store.revision)

    def resolve_lookup(self, ticket: LookupTicket, result: List[str]) -> Optional[EventOutcome]:
        return self._dispatch(LookupResolved(revision=ticket.revision, key=ticket.key, result=result))

    def fail_lookup(self, ticket: LookupTicket, reason: str) -> Optional[EventOutcome]:
        return self._dispatch(LookupFailed(revision=ticket.revision, key=ticket.key, reason=reason))

    def reset(self) -> Optional[EventOutcome]:
        """Discard user input; relative date defaults are resolved again."""
        return self._dispatch(ResetForm(defaults=self._defaults()))

    def _dispatch(self, event: InputEvent) -> Optional[EventOutcome]:
        return self.scheduler.dispatch(event)

    def payload(self) -> Dict[str, Any]:
        """Values of the visible, non-empty fields, dates as ISO-8601 strings."""
        payload: Dict[str, Any] = {}
        for descriptor in self.registry:
            state = self.store.get(descriptor.name)
            if not state.visible or is_empty(state.value):
                continue
            payload[descriptor.name] = _serialize(state.value)
        return payload

    def submit(self, handler: Optional[SubmitHandler] = None) -> Dict[str, Any]:
        """Validate the committed form and hand the payload to ``handler``.

        Hidden fields are left out of the payload. Required-ness and option
        filters are taken from the live state.

        Returns:
            ``{"ok": True, "formId", "fields"}`` on success, or
            ``{"ok": False, "formId", "errors", "missingFields"}`` when invalid
        """
        payload = self.payload()
        visible = [
            (descriptor, self.store.get(descriptor.name))
            for descriptor in self.registry
            if self.store.get(descriptor.name).visible
        ]
        result = ValidationEngine(build_submit_schema(visible)).validate(payload)
        if not result.is_valid:
            logger.info("Submit of %s rejected: %d error(s)", self.form_id, len(result.errors))
            self._audit(EventType.SUBMIT_REJECTED, {"errors": [e.to_dict() for e in result.errors]})
            return {
                "ok": False,
                "formId": self.form_id,
                "errors": [e.to_dict() for e in result.errors],
                "missingFields": result.missing_fields or [],
            }

        if handler is not None:
            handler(payload)
        self._audit(EventType.FORM_SUBMITTED, {"fields": sorted(payload)})
        return {"ok": True, "formId": self.form_id, "fields": payload}

    def _audit(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        self.emitter.emit(FormEvent(
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
            type=event_type,
            form_id=self.form_id,
            ts=utc_now(),
            actor=self.user,
            revision=self.store.revision,
            payload=payload,
        ))

    def get_events(self) -> List[FormEvent]:
        """All audit events of this session, in order."""
        return list(self._events)

    def get_form(self) -> Dict[str, Any]:
        """Current form state for rendering."""
        return {
            "formId": self.form_id,
            "object": self.object_name,
            "revision": self.store.revision,
            "fields": {state.key: state.to_dict() for state in self.store},
            "templates": [{"id": t.id, "name": t.name} for t in self.available_templates()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **kwargs: Any) -> "FormSession":
        """Build a session from plain definitions.

        ``data`` holds ``object``, ``fields``, optional ``workflows``,
        ``templates`` and ``config``; other constructor arguments go in kwargs.
        """
        return cls(
            object_name=data["object"],
            registry=FieldRegistry.from_dict(data["fields"]),
            rules=[CoreWorkflowRule.from_dict(r) for r in data.get("workflows", [])],
            templates=[Template.from_dict(t) for t in data.get("templates", [])],
            config=EvaluationConfig.from_dict(data.get("config", {})),
            **kwargs,
        )


__all__ = [
    "FormSession",
    "LookupTicket",
    "SubmitHandler",
]
