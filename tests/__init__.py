"""Test suite for formweave.

This package contains tests for:
- Tag and date resolvers
- Form state store and field registry
- Template merge engine (dirty protection, tags, dates, authorization)
- Core workflow evaluator (actions, conditions, fixpoint, divergence)
- Scheduler (queueing, stale lookups, re-entrancy)
- Validation engine and audit events
- Integration scenarios on a full ticket-create session
"""
