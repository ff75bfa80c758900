"""Series lifecycle, storage and migration."""

from .json_store import JsonEventRepository
from .pattern_migration import RecurrencePatternMigration
from .repository import EventRepository, InMemoryEventRepository
from .series_coordinator import SeriesCoordinator

__all__ = [
    "EventRepository",
    "InMemoryEventRepository",
    "JsonEventRepository",
    "RecurrencePatternMigration",
    "SeriesCoordinator",
]
