"""Evaluation configuration snapshot.

Every merge and workflow pass receives an explicit EvaluationConfig instead of
reading global settings, so toggling a setting mid-session only affects the
passes that start afterwards.
"""

from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any, Dict, FrozenSet

from dateutil import tz

DEFAULT_MAX_ITERATIONS = 10


@dataclass(frozen=True)
class EvaluationConfig:
    """Immutable settings consulted by the merge engine and the workflow evaluator.

    Attributes:
        max_iterations: Cap on workflow passes that change a condition field
        hide_clears_value: Whether a workflow ``hide`` also clears the field value
        dirty_exempt_fields: Field keys whose dirty flag never protects them from templates
        timezone: IANA zone name used for "now" and for parsing static dates

    Examples:
        >>> config = EvaluationConfig.from_dict({"maxIterations": 5})
        >>> config.max_iterations
        5
    """
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    hide_clears_value: bool = True
    dirty_exempt_fields: FrozenSet[str] = field(default_factory=frozenset)
    timezone: str = "UTC"

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if not isinstance(self.dirty_exempt_fields, frozenset):
            object.__setattr__(self, "dirty_exempt_fields", frozenset(self.dirty_exempt_fields))
        if tz.gettz(self.timezone) is None:
            raise ValueError(f"Unknown timezone: {self.timezone}")

    @property
    def tzinfo(self) -> tzinfo:
        return tz.gettz(self.timezone)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "maxIterations": self.max_iterations,
            "hideClearsValue": self.hide_clears_value,
            "dirtyExemptFields": sorted(self.dirty_exempt_fields),
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluationConfig":
        """Create EvaluationConfig from dict, falling back to defaults for missing keys."""
        return cls(
            max_iterations=data.get("maxIterations", DEFAULT_MAX_ITERATIONS),
            hide_clears_value=data.get("hideClearsValue", True),
            dirty_exempt_fields=frozenset(data.get("dirtyExemptFields", [])),
            timezone=data.get("timezone", "UTC"),
        )


__all__ = [
    "EvaluationConfig",
    "DEFAULT_MAX_ITERATIONS",
]
