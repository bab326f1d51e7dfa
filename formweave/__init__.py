"""formweave: form-state reconciliation for record-creation forms.

formweave keeps the fields of a dynamic form (e.g. a new ticket) consistent
while the user works on it:
- a template merge engine that folds a pre-authored set of values into the
  form with per-field, per-operator policies (dirty-field protection, tag
  add/remove, static and relative dates, permission-gated references)
- a core workflow evaluator that recomputes visibility, required flags,
  option filters and values from declarative rules, to a bounded fixpoint
- a single-queue scheduler that serializes user edits, template
  applications and lookup completions

Basic usage:
    >>> from formweave import FormSession
    >>> session = FormSession.from_dict({
    ...     "object": "Ticket",
    ...     "fields": [{"name": "title", "type": "text", "role": "always_overwrite"}],
    ...     "templates": [{"id": "1", "name": "Printer", "options": {"ticket.title": {"value": "Printer on fire"}}}],
    ... })
    >>> _ = session.open()
    >>> _ = session.apply_template("1")
    >>> session.store.value("title")
    'Printer on fire'
"""

__version__ = "0.1.0"

# Version info
VERSION = (0, 1, 0)

# Core exports
from formweave.runtime import FormSession

__all__ = [
    "__version__",
    "VERSION",
    "FormSession",
]
