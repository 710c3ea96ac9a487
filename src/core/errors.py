"""Domain exceptions for docwatch."""

from __future__ import annotations


class DocwatchError(Exception):
    """Base error for the change-tracking core."""


class TenantNotSetError(DocwatchError, RuntimeError):
    """A user-scoped service was used before its user id was set."""


class RuleValidationError(DocwatchError, ValueError):
    """A rule definition is structurally invalid."""


class RuleNotFoundError(DocwatchError, LookupError):
    """No rule with the given id exists for the current user."""


class RuleActionError(DocwatchError):
    """A rule action failed while executing."""


class DiffTimeoutError(DocwatchError, TimeoutError):
    """Diff computation exceeded its time limit."""


class RuleEvaluationTimeoutError(DocwatchError, TimeoutError):
    """Synchronous rule evaluation exceeded its time limit."""
