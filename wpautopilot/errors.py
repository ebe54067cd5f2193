"""
Exception hierarchy shared by every WP Autopilot module.

The API layer maps these onto HTTP status codes; the pipeline turns them
into FAILED jobs and FAILURE executions with the message preserved.
"""

from __future__ import annotations


class AutopilotError(Exception):
    """Base exception for all WP Autopilot errors."""


class ValidationError(AutopilotError):
    """Bad input: invalid cron expression, missing field, unknown timezone."""


class NotFoundError(AutopilotError):
    """A schedule, job, site or feed is absent or not owned by the caller."""


class UpstreamError(AutopilotError):
    """An AI provider, RSS feed, image API or WordPress call failed or timed out."""

    def __init__(self, message: str, status_code: int = 0, provider: str = ""):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class ConcurrencyError(AutopilotError):
    """Raised when a schedule is already claimed by another run."""


class InvalidTransitionError(AutopilotError):
    """Raised when a job is asked to move to a status it cannot reach."""


class AlreadyPublishedError(AutopilotError):
    """Raised when publish is requested for a job that already has a post."""


class LedgerError(AutopilotError):
    """Raised when a finished execution would be modified."""


class DuplicateJobError(AutopilotError):
    """Raised when a live job already exists for the same schedule and source item."""


def describe_error(exc: BaseException) -> str:
    """Human-readable message for storing on a job or execution."""
    if isinstance(exc, AutopilotError):
        return str(exc) or type(exc).__name__
    return f"{type(exc).__name__}: {exc}"
