"""Evaluation Scheduler.

Serializes every change to a form session through one FIFO queue. An event is
processed to completion (template merge, then the bounded core workflow
fixpoint) before the next one starts, so the store never has two writers.

Events posted while an event is being processed, e.g. by an audit listener,
are queued and handled after it; ``run`` never nests.

Lookup completions carry the store revision they were issued against. A
completion for a field whose value changed after that revision is stale and is
discarded, which is also how a superseded lookup is "cancelled".
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from typing_extensions import assert_never

from formweave.config import EvaluationConfig
from formweave.errors import FormError, InactiveTemplateError, LookupFailedError, WorkflowDivergenceError
from formweave.events import (
    ApplyTemplate,
    EventEmitter,
    Evaluate,
    FormEvent,
    InputEvent,
    LookupFailed,
    LookupResolved,
    OpenForm,
    ResetForm,
    UserEdit,
)
from formweave.registry import is_empty, unique_strings
from formweave.store import FieldPatch, FormStateStore
from formweave.templates import TemplateMergeEngine
from formweave.types import Actor, ChangeSource, EventType
from formweave.workflow import CoreWorkflowEvaluator, WorkflowResult

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventOutcome:
    """What processing one input event did.

    Attributes:
        event: The input event
        type: Audit event type published for it
        revision: Store revision after processing
        changes: Changed field key -> changed attributes (merge/edit and workflow)
        workflow: Result of the workflow run, if one ran to completion
        error: Non-fatal error reported for the event, if any
        discarded: True when a stale lookup completion was ignored
    """
    event: Any
    type: EventType
    revision: int = 0
    changes: Dict[str, Set[str]] = field(default_factory=dict)
    workflow: Optional[WorkflowResult] = None
    error: Optional[FormError] = None
    discarded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def merge_changes(self, changes: Dict[str, Set[str]]) -> None:
        for key, attrs in changes.items():
            self.changes.setdefault(key, set()).update(attrs)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type.value,
            "revision": self.revision,
            "changes": {key: sorted(attrs) for key, attrs in sorted(self.changes.items())},
            "discarded": self.discarded,
        }
        if self.workflow is not None:
            result["passes"] = self.workflow.passes
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


class EvaluationScheduler:
    """Single-threaded event loop of a form session.

    Attributes:
        store: Form state of the session
        merge_engine: Template merge engine
        evaluator: Core workflow evaluator
        user: Actor the session runs for
        config: Configuration snapshot handed to every merge and workflow run
        clock: Source of "now" for template application
        emitter: Audit event emitter
        form_id: Identifier used on audit events
    """

    def __init__(
        self,
        store: FormStateStore,
        merge_engine: TemplateMergeEngine,
        evaluator: CoreWorkflowEvaluator,
        user: Actor,
        config: Optional[EvaluationConfig] = None,
        clock: Optional[Clock] = None,
        emitter: Optional[EventEmitter] = None,
        form_id: Optional[str] = None,
    ):
        self.store = store
        self.merge_engine = merge_engine
        self.evaluator = evaluator
        self.user = user
        self.config = config or EvaluationConfig()
        self.clock = clock or utc_now
        self.emitter = emitter or EventEmitter()
        self.form_id = form_id or f"form_{uuid.uuid4().hex[:16]}"
        self._queue: Deque[InputEvent] = deque()
        self._processing = False

    @property
    def pending(self) -> int:
        return len(self._queue)

    def post(self, event: InputEvent) -> None:
        """Queue an event without processing it."""
        self._queue.append(event)

    def run(self) -> List[EventOutcome]:
        """Process queued events in order until the queue is empty.

        Returns an empty list when called while already processing; the outer
        call drains whatever was posted in the meantime.
        """
        if self._processing:
            return []
        self._processing = True
        outcomes: List[EventOutcome] = []
        try:
            while self._queue:
                event = self._queue.popleft()
                outcome = self._process(event)
                outcomes.append(outcome)
                self._publish(outcome)
        finally:
            self._processing = False
        return outcomes

    def dispatch(self, event: InputEvent) -> Optional[EventOutcome]:
        """Post ``event`` and process the queue; return the outcome for ``event``.

        Returns None when called from inside event processing, because the
        event is then only queued.
        """
        self.post(event)
        for outcome in self.run():
            if outcome.event is event:
                return outcome
        return None

    def _process(self, event: InputEvent) -> EventOutcome:
        config = self.config
        if isinstance(event, UserEdit):
            outcome = EventOutcome(event=event, type=EventType.FIELD_UPDATED)
            changes = self.store.user_edit(event.key, event.value)
            outcome.merge_changes(changes)
            if changes:
                self._run_workflow(outcome, config)
        elif isinstance(event, ApplyTemplate):
            outcome = EventOutcome(event=event, type=EventType.TEMPLATE_APPLIED)
            if not event.template.active:
                outcome.error = InactiveTemplateError(event.template.id)
            else:
                outcome.merge_changes(
                    self.merge_engine.apply(event.template, self.store, self.user, self.clock(), config)
                )
                self._run_workflow(outcome, config)
        elif isinstance(event, LookupResolved):
            outcome = self._apply_lookup(event, config)
        elif isinstance(event, LookupFailed):
            outcome = EventOutcome(
                event=event,
                type=EventType.LOOKUP_FAILED,
                error=LookupFailedError(event.key, event.reason),
            )
            logger.warning("Lookup for %s failed: %s", event.key, event.reason)
        elif isinstance(event, ResetForm):
            outcome = EventOutcome(event=event, type=EventType.FORM_RESET)
            self.store.reset(event.defaults)
            self._run_workflow(outcome, config)
        elif isinstance(event, OpenForm):
            outcome = EventOutcome(event=event, type=EventType.FORM_OPENED)
            self.store.reset(event.defaults)
            self._run_workflow(outcome, config)
        elif isinstance(event, Evaluate):
            outcome = EventOutcome(event=event, type=EventType.WORKFLOW_EVALUATED)
            self._run_workflow(outcome, config)
        else:
            assert_never(event)

        outcome.revision = self.store.revision
        return outcome

    def _apply_lookup(self, event: LookupResolved, config: EvaluationConfig) -> EventOutcome:
        state = self.store.get(event.key)
        if state is None or event.revision < state.revision:
            logger.info(
                "Discarding stale lookup for %s (issued at %d, field at %d)",
                event.key, event.revision, state.revision if state is not None else -1,
            )
            return EventOutcome(event=event, type=EventType.LOOKUP_DISCARDED, discarded=True)

        outcome = EventOutcome(event=event, type=EventType.LOOKUP_APPLIED)
        options = frozenset(unique_strings(event.result))
        patch = FieldPatch(options=options)
        if isinstance(state.value, list):
            patch = FieldPatch(options=options, value=[v for v in state.value if v in options])
        elif not is_empty(state.value) and str(state.value) not in options:
            patch = FieldPatch(options=options, value=None, display=None)
        changes = self.store.commit({state.key: patch}, ChangeSource.LOOKUP)
        outcome.merge_changes(changes)
        if changes:
            self._run_workflow(outcome, config)
        return outcome

    def _run_workflow(self, outcome: EventOutcome, config: EvaluationConfig) -> None:
        try:
            result = self.evaluator.run(self.store, config)
        except WorkflowDivergenceError as exc:
            outcome.error = exc
            return
        outcome.workflow = result
        outcome.merge_changes(result.changes)

    def _publish(self, outcome: EventOutcome) -> None:
        event_type = outcome.type
        if isinstance(outcome.error, WorkflowDivergenceError):
            event_type = EventType.WORKFLOW_DIVERGED
        self.emitter.emit(FormEvent(
            event_id=f"evt_{uuid.uuid4().hex[:16]}",
            type=event_type,
            form_id=self.form_id,
            ts=utc_now(),
            actor=self.user,
            revision=outcome.revision,
            payload=outcome.to_dict(),
        ))


__all__ = [
    "EvaluationScheduler",
    "EventOutcome",
    "Clock",
    "utc_now",
]
