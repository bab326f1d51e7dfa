"""Structured error types for the formweave engine.

Two kinds of error live here:
- FieldError: an immutable per-field record used in validation results and
  submit responses
- FormError and its subclasses: exceptions raised by the engine. Each carries
  structured context and serializes with to_dict(), so a caller can report
  them without parsing messages.

Recoverable conditions (unknown field keys, malformed date specs, refused
authorization) are never raised; they are logged and skipped where they occur.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from formweave.types import FieldErrorCode, WorkflowState


@dataclass(frozen=True)
class FieldError:
    """Per-field validation error details.

    Attributes:
        path: Dot-notation field path (e.g., "title", "options.tags.operator")
        code: Specific validation error code
        message: Human-readable error description
        expected: Optional - what was expected (type, format, enum values, etc.)
        received: Optional - what was actually received

    Examples:
        >>> err = FieldError(
        ...     path="title",
        ...     code=FieldErrorCode.REQUIRED,
        ...     message="Field 'title' is required but was not provided",
        ... )
        >>> err.to_dict()["code"]
        'required'
    """
    path: str
    code: FieldErrorCode
    message: str
    expected: Optional[Any] = None
    received: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "path": self.path,
            "code": self.code.value if isinstance(self.code, FieldErrorCode) else self.code,
            "message": self.message,
        }
        if self.expected is not None:
            result["expected"] = self.expected
        if self.received is not None:
            result["received"] = self.received
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldError":
        """Create FieldError from dict."""
        code = data["code"]
        if isinstance(code, str):
            code = FieldErrorCode(code)
        return cls(
            path=data["path"],
            code=code,
            message=data["message"],
            expected=data.get("expected"),
            received=data.get("received"),
        )


class FormError(Exception):
    """Base class for all errors raised by formweave."""

    kind = "form_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class InvalidDefinitionError(FormError):
    """Raised when a template, rule or field definition has the wrong shape.

    Attributes:
        definition: What was being loaded ("template", "workflow", ...)
        errors: Field-level errors produced by schema validation
    """

    kind = "invalid_definition"

    def __init__(self, definition: str, errors: List[FieldError]):
        self.definition = definition
        self.errors = errors
        paths = ", ".join(e.path or "<root>" for e in errors)
        super().__init__(f"Invalid {definition} definition: {paths}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["definition"] = self.definition
        result["errors"] = [e.to_dict() for e in self.errors]
        return result


class WorkflowDivergenceError(FormError):
    """Raised when the workflow fixpoint does not settle within the iteration cap.

    This is a configuration error in the rule set (two rules feeding each other
    without converging). Directives committed by earlier passes stay applied.

    Attributes:
        iterations: Number of passes that ran
        changed: Field keys still changing in the last pass
    """

    kind = "workflow_divergence"

    def __init__(self, iterations: int, changed: Set[str]):
        self.iterations = iterations
        self.changed = set(changed)
        super().__init__(
            f"Core workflow did not settle after {iterations} passes; "
            f"still changing: {', '.join(sorted(self.changed))}"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["iterations"] = self.iterations
        result["changed"] = sorted(self.changed)
        return result


class LookupFailedError(FormError):
    """Reported when an external lookup for a field fails.

    Non-fatal: the field keeps its last known-good state.
    """

    kind = "lookup_failed"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Lookup for field '{key}' failed: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["key"] = self.key
        result["reason"] = self.reason
        return result


class ReentrantEvaluationError(FormError):
    """Raised when the workflow evaluator is started while a run is in progress."""

    kind = "reentrant_evaluation"


class InvalidStateTransitionError(FormError):
    """Raised when the evaluator attempts a transition its state table forbids.

    Attributes:
        current_state: The current state before the attempted transition
        target_state: The target state that was attempted
    """

    kind = "invalid_state_transition"

    def __init__(self, current_state: WorkflowState, target_state: WorkflowState, message: str):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(message)


class TemplateNotFoundError(FormError):
    """Raised when a session is asked to apply a template it does not know."""

    kind = "template_not_found"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} not found")


class InactiveTemplateError(FormError):
    """Raised when an inactive template is applied."""

    kind = "inactive_template"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} is not active")


__all__ = [
    "FieldError",
    "FormError",
    "InvalidDefinitionError",
    "WorkflowDivergenceError",
    "LookupFailedError",
    "ReentrantEvaluationError",
    "InvalidStateTransitionError",
    "TemplateNotFoundError",
    "InactiveTemplateError",
]
