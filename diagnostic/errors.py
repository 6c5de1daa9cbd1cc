"""Typed failures raised by the scoring engine, stores and services."""
from __future__ import annotations

from typing import Any


class DiagnosticError(Exception):
    """Base class for every failure the engine reports to callers."""
    retryable = False


class ValidationError(DiagnosticError):
    """Answer submission or catalog write rejected as a whole.

    ``errors`` lists one ``{"question_id", "pillar_id", "reason"}`` dict per
    offending item; the message names the first one.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_issues(cls, issues: list[dict[str, Any]]) -> ValidationError:
        first = issues[0]
        more = f" (and {len(issues) - 1} more)" if len(issues) > 1 else ""
        return cls(
            f"Question {first['question_id']} in pillar {first['pillar_id']}: {first['reason']}{more}",
            issues,
        )


class NotAuthenticatedError(DiagnosticError):
    """No usable caller identity."""


class NotFoundOrForbidden(DiagnosticError):
    """The record does not exist or belongs to someone else; callers cannot tell which."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class PermissionDeniedError(DiagnosticError):
    """The caller's role does not allow the operation."""


class StoreUnavailableError(DiagnosticError):
    """The underlying database failed; the operation had no partial effect."""
    retryable = True
