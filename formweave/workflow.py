"""Core workflow evaluation.

A core workflow rule pairs a condition map with a perform map:

    {
        "object": "Ticket",
        "condition_selected": {"ticket.state_id": {"operator": "is", "value": "7"}},
        "perform": {"ticket.pending_time": {"operator": "remove", "remove": "true"}},
    }

The CoreWorkflowEvaluator runs every matching rule against the live form and
turns their actions into directives (field-state patches). Each pass starts
field metadata (visibility, required flag, options filter) from the descriptor
defaults, so a rule that stops matching stops affecting the field. Values are
not reset between passes.

Evaluation is a bounded fixpoint:

    IDLE -> EVALUATING -> APPLYING -> (IDLE | EVALUATING)

After a pass is applied, the evaluator evaluates again if a value or
visibility change touched a field some rule condition reads. The iteration cap
counts passes that change such a field; the pass that confirms nothing changes
any more is not counted. A pass beyond the cap that still changes something
raises WorkflowDivergenceError; passes already applied stay committed.

A ``hide`` only clears the field (value, required flag) when the field is
still hidden after every rule of the pass; a later ``show`` in the same pass
leaves it intact.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Set

from typing_extensions import assert_never

from formweave.config import EvaluationConfig
from formweave.errors import (
    InvalidDefinitionError,
    InvalidStateTransitionError,
    ReentrantEvaluationError,
    WorkflowDivergenceError,
)
from formweave.registry import FieldDescriptor, FieldRegistry, is_empty, unique_strings
from formweave.store import UNSET, FieldPatch, FormFieldState, FormStateStore
from formweave.types import ActionOperator, ChangeSource, ConditionOperator, WorkflowState
from formweave.validation import ValidationEngine

logger = logging.getLogger(__name__)


WORKFLOW_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "object": {"type": "string", "minLength": 1},
        "active": {"type": "boolean"},
        "condition_selected": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {"operator": {"enum": [o.value for o in ConditionOperator]}},
                "required": ["operator"],
            },
        },
        "perform": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {"operator": {"enum": [o.value for o in ActionOperator]}},
                "required": ["operator"],
            },
        },
    },
    "required": ["object"],
}


# Valid evaluator transitions.
VALID_TRANSITIONS: Dict[WorkflowState, Set[WorkflowState]] = {
    WorkflowState.IDLE: {WorkflowState.EVALUATING},
    WorkflowState.EVALUATING: {WorkflowState.APPLYING, WorkflowState.IDLE},
    WorkflowState.APPLYING: {WorkflowState.IDLE, WorkflowState.EVALUATING},
}

_RERUN_ATTRIBUTES = frozenset({"value", "visible"})


def _as_strings(value: Any) -> List[str]:
    if is_empty(value):
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value if not is_empty(v)]
    if isinstance(value, date):
        return [value.isoformat()]
    return [str(value)]


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, (list, tuple)):
        value = value[0] if len(value) == 1 else None
    if is_empty(value) or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Condition:
    """One entry of a rule's condition map.

    Examples:
        >>> Condition(ConditionOperator.IS, "3").matches("3")
        True
        >>> Condition(ConditionOperator.IS, ["1", "2"]).matches("3")
        False
    """
    operator: ConditionOperator
    value: Any = None

    def matches(self, field_value: Any) -> bool:
        """Evaluate this condition against a field value."""
        operator = self.operator
        if operator in (ConditionOperator.IS, ConditionOperator.IS_ONE_OF):
            return self._is(field_value)
        elif operator in (ConditionOperator.IS_NOT, ConditionOperator.NOT, ConditionOperator.IS_NOT_ONE_OF):
            return not self._is(field_value)
        elif operator is ConditionOperator.CONTAINS:
            return self._contains(field_value)
        elif operator is ConditionOperator.CONTAINS_NOT:
            return not self._contains(field_value)
        elif operator is ConditionOperator.IS_SET:
            return not is_empty(field_value)
        elif operator is ConditionOperator.NOT_SET:
            return is_empty(field_value)
        elif operator in (
            ConditionOperator.GREATER_THAN,
            ConditionOperator.GREATER_THAN_OR_EQUAL,
            ConditionOperator.LESS_THAN,
            ConditionOperator.LESS_THAN_OR_EQUAL,
        ):
            return self._compare(field_value)
        else:
            assert_never(operator)

    def _is(self, field_value: Any) -> bool:
        expected = _as_strings(self.value)
        actual = _as_strings(field_value)
        if not expected:
            return not actual
        return any(item in expected for item in actual)

    def _contains(self, field_value: Any) -> bool:
        expected = _as_strings(self.value)
        if not expected:
            return False
        if isinstance(field_value, (list, tuple)):
            actual = _as_strings(field_value)
            return any(item in actual for item in expected)
        text = "" if is_empty(field_value) else str(field_value)
        return any(item in text for item in expected)

    def _compare(self, field_value: Any) -> bool:
        actual = _as_number(field_value)
        expected = _as_number(self.value)
        if actual is None or expected is None:
            return False
        if self.operator is ConditionOperator.GREATER_THAN:
            return actual > expected
        if self.operator is ConditionOperator.GREATER_THAN_OR_EQUAL:
            return actual >= expected
        if self.operator is ConditionOperator.LESS_THAN:
            return actual < expected
        return actual <= expected

    def to_dict(self) -> Dict[str, Any]:
        return {"operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass(frozen=True)
class Action:
    """One entry of a rule's perform map.

    The payload is read from the key named after the operator
    (``{"operator": "select", "select": "Incident"}``).
    """
    operator: ActionOperator
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"operator": self.operator.value, self.operator.value: self.payload}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        operator = ActionOperator(data["operator"])
        return cls(operator=operator, payload=data.get(operator.value, data.get("value")))


@dataclass(frozen=True)
class CoreWorkflowRule:
    """A condition -> action pair evaluated against the live form.

    Attributes:
        name: Display name used in logs and directives
        object: Record object the rule applies to (e.g., "Ticket")
        condition_selected: Field key -> condition; empty means always active
        perform: Field key -> action
        active: Inactive rules are never evaluated
    """
    object: str
    condition_selected: Mapping[str, Condition] = field(default_factory=dict)
    perform: Mapping[str, Action] = field(default_factory=dict)
    name: str = ""
    active: bool = True

    def applies_to(self, object_name: str) -> bool:
        return self.active and self.object.lower() == object_name.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "object": self.object,
            "active": self.active,
            "condition_selected": {k: c.to_dict() for k, c in self.condition_selected.items()},
            "perform": {k: a.to_dict() for k, a in self.perform.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoreWorkflowRule":
        """Create CoreWorkflowRule from dict.

        Raises:
            InvalidDefinitionError: If the dict does not match WORKFLOW_SCHEMA
        """
        result = ValidationEngine(WORKFLOW_SCHEMA).validate(data)
        if not result.is_valid:
            raise InvalidDefinitionError("workflow", result.errors)
        return cls(
            name=data.get("name", ""),
            object=data["object"],
            active=data.get("active", True),
            condition_selected={
                key: Condition.from_dict(value)
                for key, value in data.get("condition_selected", {}).items()
            },
            perform={key: Action.from_dict(value) for key, value in data.get("perform", {}).items()},
        )


@dataclass(frozen=True)
class WorkflowDirective:
    """The patch one rule's action produced for one field in one pass."""
    key: str
    rule: str
    operator: ActionOperator
    patch: FieldPatch
    iteration: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "rule": self.rule,
            "operator": self.operator.value,
            "patch": self.patch.to_dict(),
            "iteration": self.iteration,
        }


@dataclass
class WorkflowResult:
    """Outcome of one evaluator run.

    Attributes:
        passes: Number of evaluation passes
        changes: Changed field key -> changed attributes, across all passes
        directives: Every directive produced, in application order
    """
    passes: int = 0
    changes: Dict[str, Set[str]] = field(default_factory=dict)
    directives: List[WorkflowDirective] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passes": self.passes,
            "changes": {key: sorted(attrs) for key, attrs in self.changes.items()},
            "directives": [d.to_dict() for d in self.directives],
        }


class CoreWorkflowEvaluator:
    """Evaluate core workflow rules against a form to a bounded fixpoint.

    Attributes:
        registry: Field descriptors (screen defaults, value types)
        rules: Rules in declaration order
        object_name: Record object of the form (e.g., "Ticket")
        state: Current evaluator state

    Examples:
        >>> from formweave.registry import FieldDescriptor
        >>> from formweave.types import FieldType
        >>> registry = FieldRegistry([FieldDescriptor(name="pending_time", type=FieldType.DATETIME)])
        >>> rule = CoreWorkflowRule.from_dict({
        ...     "object": "Ticket",
        ...     "perform": {"ticket.pending_time": {"operator": "hide", "hide": "true"}},
        ... })
        >>> evaluator = CoreWorkflowEvaluator(registry, [rule], "Ticket")
        >>> store = FormStateStore(registry)
        >>> evaluator.run(store, EvaluationConfig()).passes
        1
        >>> store.get("pending_time").visible
        False
    """

    def __init__(self, registry: FieldRegistry, rules: List[CoreWorkflowRule], object_name: str):
        self.registry = registry
        self.rules = list(rules)
        self.object_name = object_name
        self.state = WorkflowState.IDLE

    def can_transition_to(self, target_state: WorkflowState) -> bool:
        return target_state in VALID_TRANSITIONS.get(self.state, set())

    def transition_to(self, target_state: WorkflowState) -> None:
        """Move to ``target_state``.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        if not self.can_transition_to(target_state):
            raise InvalidStateTransitionError(
                current_state=self.state,
                target_state=target_state,
                message=(
                    f"Invalid workflow transition: cannot transition from "
                    f"'{self.state.value}' to '{target_state.value}'. "
                    f"Valid transitions from '{self.state.value}' are: "
                    f"{', '.join(sorted(s.value for s in VALID_TRANSITIONS[self.state]))}"
                ),
            )
        logger.debug("Workflow %s -> %s", self.state.value, target_state.value)
        self.state = target_state

    def condition_keys(self) -> Set[str]:
        """Bare keys of every field read by an applicable rule's conditions."""
        keys: Set[str] = set()
        for rule in self.rules:
            if not rule.applies_to(self.object_name):
                continue
            for key in rule.condition_selected:
                name = self.registry.resolve_key(key)
                if name is not None:
                    keys.add(name)
        return keys

    def run(self, store: FormStateStore, config: EvaluationConfig) -> WorkflowResult:
        """Evaluate and apply rules until no condition-relevant field changes.

        Raises:
            ReentrantEvaluationError: If a run is already in progress
            WorkflowDivergenceError: If the pass after ``config.max_iterations``
                changing passes would still change a watched field; that pass
                is not applied
        """
        if self.state is not WorkflowState.IDLE:
            raise ReentrantEvaluationError(
                f"Core workflow is already {self.state.value}; nested evaluation is not allowed"
            )

        result = WorkflowResult()
        watched = self.condition_keys()
        self.transition_to(WorkflowState.EVALUATING)
        try:
            while True:
                patches, directives = self._evaluate_pass(store, config, result.passes + 1)
                if result.passes >= config.max_iterations:
                    pending = self._pending_rerun(store, patches, watched)
                    if pending:
                        raise WorkflowDivergenceError(result.passes, pending)
                result.passes += 1
                result.directives.extend(directives)

                self.transition_to(WorkflowState.APPLYING)
                changes = store.commit(patches, ChangeSource.WORKFLOW)
                for key, attrs in changes.items():
                    result.changes.setdefault(key, set()).update(attrs)

                rerun = {
                    key for key, attrs in changes.items()
                    if key in watched and attrs & _RERUN_ATTRIBUTES
                }
                if not rerun:
                    self.transition_to(WorkflowState.IDLE)
                    logger.debug("Core workflow settled after %d pass(es)", result.passes)
                    return result
                logger.debug("Pass %d changed %s, evaluating again", result.passes, sorted(rerun))
                self.transition_to(WorkflowState.EVALUATING)
        except WorkflowDivergenceError:
            logger.error("Core workflow diverged after %d passes", result.passes)
            raise
        finally:
            self.state = WorkflowState.IDLE

    def _pending_rerun(
        self,
        store: FormStateStore,
        patches: Mapping[str, FieldPatch],
        watched: Set[str],
    ) -> Set[str]:
        pending: Set[str] = set()
        for key in watched:
            patch = patches.get(key)
            state = store.get(key)
            if patch is None or state is None:
                continue
            for attr in _RERUN_ATTRIBUTES:
                new = getattr(patch, attr)
                if new is not UNSET and new != getattr(state, attr):
                    pending.add(key)
        return pending

    def _evaluate_pass(
        self,
        store: FormStateStore,
        config: EvaluationConfig,
        iteration: int,
    ):
        snapshot = store.snapshot()
        patches: Dict[str, FieldPatch] = {
            descriptor.name: FieldPatch(
                visible=descriptor.shown,
                required=descriptor.required,
                options_filter=descriptor.filter,
            )
            for descriptor in self.registry
        }
        working = {key: state.value for key, state in snapshot.items()}
        directives: List[WorkflowDirective] = []
        hidden: Set[str] = set()

        for rule in self.rules:
            if not rule.applies_to(self.object_name):
                continue
            if not self._rule_matches(rule, snapshot):
                continue
            for key, action in rule.perform.items():
                descriptor = self.registry.describe(key)
                if descriptor is None:
                    logger.warning("Workflow %r performs on unknown field %r, skipping", rule.name, key)
                    continue
                patch = self._directive(descriptor, action, working[descriptor.name], store)
                if action.operator is ActionOperator.HIDE:
                    hidden.add(descriptor.name)
                patches[descriptor.name] = patches[descriptor.name].merged(patch)
                if patch.value is not UNSET:
                    working[descriptor.name] = patch.value
                directives.append(WorkflowDirective(
                    key=descriptor.name,
                    rule=rule.name,
                    operator=action.operator,
                    patch=patch,
                    iteration=iteration,
                ))

        for key in hidden:
            if patches[key].visible is not False:
                continue
            clear = FieldPatch(required=False)
            if config.hide_clears_value:
                clear = FieldPatch(required=False, value=self.registry.describe(key).empty_value())
            patches[key] = patches[key].merged(clear)
        return patches, directives

    def _rule_matches(self, rule: CoreWorkflowRule, snapshot: Mapping[str, FormFieldState]) -> bool:
        for key, condition in rule.condition_selected.items():
            name = self.registry.resolve_key(key)
            if name is None:
                logger.warning("Workflow %r reads unknown field %r, skipping rule", rule.name, key)
                return False
            if not condition.matches(snapshot[name].value):
                return False
        return True

    def _directive(
        self,
        descriptor: FieldDescriptor,
        action: Action,
        current: Any,
        store: FormStateStore,
    ) -> FieldPatch:
        operator = action.operator
        if operator is ActionOperator.SHOW:
            return FieldPatch(visible=True)
        elif operator is ActionOperator.HIDE:
            return FieldPatch(visible=False)
        elif operator is ActionOperator.SET_MANDATORY:
            return FieldPatch(required=True)
        elif operator is ActionOperator.SET_OPTIONAL:
            return FieldPatch(required=False)
        elif operator is ActionOperator.REMOVE:
            return FieldPatch(value=descriptor.empty_value())
        elif operator is ActionOperator.SELECT:
            return FieldPatch(value=store.coerce(descriptor, action.payload))
        elif operator is ActionOperator.FILTER:
            allowed = frozenset(unique_strings(action.payload))
            if descriptor.type.is_multi_valued:
                return FieldPatch(options_filter=allowed, value=[v for v in current if v in allowed])
            if not is_empty(current) and str(current) not in allowed:
                return FieldPatch(options_filter=allowed, value=descriptor.empty_value())
            return FieldPatch(options_filter=allowed)
        else:
            assert_never(operator)


__all__ = [
    "Condition",
    "Action",
    "CoreWorkflowRule",
    "WorkflowDirective",
    "WorkflowResult",
    "CoreWorkflowEvaluator",
    "VALID_TRANSITIONS",
    "WORKFLOW_SCHEMA",
]
