"""Event repository interface and in-memory implementation.

The series coordinator only talks to storage through :class:`EventRepository`.
Implementations provide atomic single-record create/update/delete; there are no
cross-record transactions.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any, Optional, Protocol, Union, runtime_checkable

from calendar_series.calendar.models import CalendarEvent, EventType
from calendar_series.exceptions import EventNotFoundError, RepositoryError

logger = logging.getLogger(__name__)

EventData = Union[CalendarEvent, Mapping[str, Any]]


@runtime_checkable
class EventRepository(Protocol):
    """Storage operations required by the series coordinator."""

    def find_by_id(self, event_id: str) -> Optional[CalendarEvent]:
        """Return the event or None when it does not exist."""
        ...

    def find_by_recurrence_id(self, master_id: str) -> list[CalendarEvent]:
        """Return every instance and exception referencing ``master_id``."""
        ...

    def find_exceptions(self, master_id: str) -> list[CalendarEvent]:
        """Return the exceptions (``is_exception=True``) of a series."""
        ...

    def find_recurring_events(self) -> list[CalendarEvent]:
        """Return every master event (events carrying a recurrence pattern)."""
        ...

    def find_all(self) -> list[CalendarEvent]:
        ...

    def find_by_date_range(self, start_date: date, end_date: date) -> list[CalendarEvent]:
        ...

    def find_by_type(self, event_type: EventType) -> list[CalendarEvent]:
        ...

    def create(self, data: EventData) -> CalendarEvent:
        """Persist a new event; an id is assigned when missing.

        Raises:
            RepositoryError: If an event with the same id already exists
        """
        ...

    def update(self, event_id: str, patch: Mapping[str, Any]) -> CalendarEvent:
        """Apply ``patch`` (field name -> value, None clears) and return the result."""
        ...

    def delete(self, event_id: str) -> None:
        """Delete an event; deleting a missing id is a no-op."""
        ...


def _by_date(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    return sorted(events, key=lambda e: (e.date, e.id))


class InMemoryEventRepository:
    """Dict-backed repository used by tests and embedded callers.

    Returned events are copies; mutating them never changes stored state.
    """

    def __init__(self, events: Optional[Iterable[EventData]] = None) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, CalendarEvent] = {}
        for data in events or ():
            event = self._coerce(data)
            self._events[event.id] = event

    # Queries

    def find_by_id(self, event_id: str) -> Optional[CalendarEvent]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event is not None else None

    def find_by_recurrence_id(self, master_id: str) -> list[CalendarEvent]:
        return self._select(lambda e: e.recurrence_id == master_id)

    def find_exceptions(self, master_id: str) -> list[CalendarEvent]:
        return self._select(lambda e: e.recurrence_id == master_id and e.is_exception)

    def find_recurring_events(self) -> list[CalendarEvent]:
        return self._select(lambda e: e.recurrence_pattern is not None)

    def find_all(self) -> list[CalendarEvent]:
        return self._select(lambda e: True)

    def find_by_date_range(self, start_date: date, end_date: date) -> list[CalendarEvent]:
        return self._select(lambda e: start_date <= e.date <= end_date)

    def find_by_type(self, event_type: EventType) -> list[CalendarEvent]:
        return self._select(lambda e: e.type == event_type)

    # Mutations

    def create(self, data: EventData) -> CalendarEvent:
        event = self._coerce(data)
        with self._lock:
            if event.id in self._events:
                raise RepositoryError(f"Event already exists: {event.id}")
            self._events[event.id] = event
            try:
                self._committed()
            except Exception:
                del self._events[event.id]
                raise
        logger.debug("Created event %s (%s)", event.id, event.role.value)
        return event.model_copy(deep=True)

    def update(self, event_id: str, patch: Mapping[str, Any]) -> CalendarEvent:
        with self._lock:
            current = self._events.get(event_id)
            if current is None:
                raise EventNotFoundError(event_id)
            fields = current.model_dump(exclude={"occurrence_key"})
            fields.update(patch)
            fields["id"] = event_id
            updated = CalendarEvent.model_validate(fields)
            self._events[event_id] = updated
            try:
                self._committed()
            except Exception:
                self._events[event_id] = current
                raise
        logger.debug("Updated event %s fields=%s", event_id, sorted(patch))
        return updated.model_copy(deep=True)

    def delete(self, event_id: str) -> None:
        with self._lock:
            removed = self._events.pop(event_id, None)
            if removed is None:
                return
            try:
                self._committed()
            except Exception:
                self._events[event_id] = removed
                raise
        logger.debug("Deleted event %s", event_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    # Helpers

    def _select(self, predicate: Any) -> list[CalendarEvent]:
        with self._lock:
            return _by_date(e.model_copy(deep=True) for e in self._events.values() if predicate(e))

    def _committed(self) -> None:
        """Hook called with the lock held after every mutation."""

    @staticmethod
    def _coerce(data: EventData) -> CalendarEvent:
        if isinstance(data, CalendarEvent):
            fields = data.model_dump(exclude={"occurrence_key"})
        else:
            fields = dict(data)
        if not fields.get("id"):
            fields["id"] = uuid.uuid4().hex
        return CalendarEvent.model_validate(fields)
