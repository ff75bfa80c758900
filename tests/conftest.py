"""Shared fixtures for calendar_series tests."""

from collections.abc import Callable, Generator
from datetime import date
from types import SimpleNamespace
from typing import Any

import pytest

from calendar_series.calendar.models import CalendarEvent, RecurrencePattern
from calendar_series.calendar.recurrence_engine import RecurrenceEngine
from calendar_series.domain.repository import InMemoryEventRepository
from calendar_series.domain.series_coordinator import SeriesCoordinator

PINNED_TODAY = "2024-01-15"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "fast: Tests that run in well under a second")
    config.addinivalue_line("markers", "integration: Tests touching the filesystem or CLI")


@pytest.fixture
def simple_settings() -> SimpleNamespace:
    """Minimal settings object accepted anywhere a SeriesSettings is."""
    return SimpleNamespace(
        max_occurrences=1000,
        preview_months=6,
        future_window_years=2,
        default_future_limit=10,
        fix_weekly_from_anchor=False,
    )


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, Any, None]:
    """Clear CALENDAR_SERIES_* variables and pin today's date."""
    for name in (
        "CALENDAR_SERIES_DEBUG",
        "CALENDAR_SERIES_LOG_LEVEL",
        "CALENDAR_SERIES_STORE_PATH",
        "CALENDAR_SERIES_MAX_OCCURRENCES",
        "CALENDAR_SERIES_PREVIEW_MONTHS",
        "CALENDAR_SERIES_FUTURE_WINDOW_YEARS",
        "CALENDAR_SERIES_DEFAULT_FUTURE_LIMIT",
        "CALENDAR_SERIES_FIX_WEEKLY_FROM_ANCHOR",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CALENDAR_SERIES_TEST_DATE", PINNED_TODAY)
    yield


@pytest.fixture(autouse=True)
def reset_recurrence_engine() -> Generator[None, Any, None]:
    """Reset the global engine singleton so settings never leak between tests."""
    yield
    import calendar_series.calendar.recurrence_engine

    calendar_series.calendar.recurrence_engine._engine = None


@pytest.fixture
def engine() -> RecurrenceEngine:
    return RecurrenceEngine()


@pytest.fixture
def repository() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def coordinator(repository: InMemoryEventRepository, engine: RecurrenceEngine) -> SeriesCoordinator:
    return SeriesCoordinator(repository, engine)


@pytest.fixture
def make_event() -> Callable[..., CalendarEvent]:
    """Factory for events; pass ``pattern`` as a dict or RecurrencePattern."""

    def _make(
        event_id: str = "evt-1",
        on: date = date(2024, 1, 1),
        pattern: Any = None,
        **fields: Any,
    ) -> CalendarEvent:
        if isinstance(pattern, dict):
            pattern = RecurrencePattern.model_validate(pattern)
        fields.setdefault("title", "Team sync")
        fields.setdefault("time", "09:00-10:00")
        return CalendarEvent(id=event_id, date=on, recurrence_pattern=pattern, **fields)

    return _make
