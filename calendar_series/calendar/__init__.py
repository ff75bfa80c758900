"""Recurrence data model and occurrence generation."""

from .models import (
    CalendarEvent,
    DerivedEventId,
    EventRole,
    EventType,
    RecurrencePattern,
    RecurrenceType,
)
from .recurrence_engine import RecurrenceEngine, RecurrenceEngineConfig, get_recurrence_engine

__all__ = [
    "CalendarEvent",
    "DerivedEventId",
    "EventRole",
    "EventType",
    "RecurrenceEngine",
    "RecurrenceEngineConfig",
    "RecurrencePattern",
    "RecurrenceType",
    "get_recurrence_engine",
]
