"""Exception hierarchy for recurring-series operations.

Every error raised by calendar_series derives from :class:`SeriesError` so
callers (CLI, HTTP handlers, scripts) can catch the whole family in one place
while still distinguishing the cases that map to different responses.
"""

from __future__ import annotations

from collections.abc import Iterable


class SeriesError(Exception):
    """Base exception for all recurring-series errors."""


class EventNotFoundError(SeriesError):
    """An event id (or the master it references) does not resolve.

    Should result in HTTP 404 Not Found at an API boundary.
    """

    def __init__(self, event_id: str, message: str | None = None):
        self.event_id = event_id
        super().__init__(message or f"Event not found: {event_id}")


class NotRecurringError(SeriesError):
    """A recurrence operation was attempted on a non-recurring event."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__("Event is not a recurring event")


class InvalidPatternError(SeriesError):
    """Recurrence pattern validation failed.

    Carries the complete list of violated rules in ``errors``, not just the
    first one, so callers can report everything at once.

    Should result in HTTP 400 Bad Request at an API boundary.
    """

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid recurrence pattern: {', '.join(self.errors)}")


class ReconciliationError(SeriesError):
    """Existing instances/exceptions could not be reconciled with a new pattern.

    Raised when the repository fails while future occurrences are being
    deleted or inspected. The master's pattern is not persisted in that case,
    so the update can be re-run.
    """


class MigrationError(SeriesError):
    """The repair pass could not run at all (repository listing failed)."""


class RepositoryError(SeriesError):
    """Storage failure raised by the bundled repository implementations."""


class ConfigurationError(SeriesError):
    """Configuration file or environment value could not be used."""
