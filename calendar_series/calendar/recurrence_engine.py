"""Occurrence generation and pattern reasoning for recurring calendar events."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from calendar_series.core.clock import today

from .models import (
    CalendarEvent,
    DerivedEventId,
    PatternComparison,
    PatternValidationResult,
    RecurrencePattern,
    RecurrenceType,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 1000
DEFAULT_END_DATE = date(2099, 12, 31)


@dataclass
class RecurrenceEngineConfig:
    """Configuration for occurrence generation.

    Consolidates the engine's safety limits and windows with explicit defaults.
    """

    max_occurrences: int = DEFAULT_MAX_OCCURRENCES
    default_end_date: date = DEFAULT_END_DATE
    future_window_years: int = 2
    preview_window_months: int = 6
    default_future_limit: int = 10

    @classmethod
    def from_settings(cls, settings: Any) -> RecurrenceEngineConfig:
        """Extract engine configuration from a settings object.

        Args:
            settings: Configuration object; missing attributes fall back to defaults

        Returns:
            RecurrenceEngineConfig with values from settings or defaults
        """
        return cls(
            max_occurrences=getattr(settings, "max_occurrences", DEFAULT_MAX_OCCURRENCES),
            default_end_date=getattr(settings, "default_end_date", DEFAULT_END_DATE),
            future_window_years=getattr(settings, "future_window_years", 2),
            preview_window_months=getattr(settings, "preview_months", 6),
            default_future_limit=getattr(settings, "default_future_limit", 10),
        )


def _sunday_weekday(d: date) -> int:
    """Weekday number with 0=Sunday..6=Saturday."""
    return (d.weekday() + 1) % 7


def _week_start(d: date) -> date:
    """Sunday that starts the calendar week containing ``d``."""
    return d - timedelta(days=_sunday_weekday(d))


def _clamp_day(year: int, month: int, day: int) -> date:
    """Build a date, rolling an out-of-range day back to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


class RecurrenceEngine:
    """Stateless calendar math for recurrence patterns.

    Every method is a pure function of its arguments (plus ``today()`` for the
    "future" helpers). One instance is enough process-wide; see
    ``get_recurrence_engine()``.
    """

    def __init__(self, settings: Any = None):
        self.config = RecurrenceEngineConfig.from_settings(settings)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_occurrences(
        self, event: CalendarEvent, start_date: date, end_date: date
    ) -> list[CalendarEvent]:
        """Generate occurrences of ``event`` that fall within ``[start_date, end_date]``.

        Walks forward from the anchor one pattern step at a time. Stops at
        whichever comes first: the occurrence count limit, the pattern's own
        end date, or the end of the search window.

        Args:
            event: Master event (or a plain event)
            start_date: First date of the search window, inclusive
            end_date: Last date of the search window, inclusive

        Returns:
            Derived occurrences in date order. A plain event is returned as-is
            when its date lies in the window.
        """
        pattern = event.recurrence_pattern
        if pattern is None:
            return [event] if start_date <= event.date <= end_date else []
        if not self._is_steppable(pattern, event):
            return []

        recurrence_end = self._recurrence_end(pattern)
        search_end = min(end_date, recurrence_end)
        max_occurrences = self._max_occurrences(pattern)

        occurrences: list[CalendarEvent] = []
        current = event.date
        count = 0
        while current <= search_end and count < max_occurrences:
            if start_date <= current <= end_date:
                occurrences.append(self._derive(event, current))
            count += 1
            current = self.calculate_next_occurrence(current, pattern)

        logger.debug(
            "Generated %d occurrences for %s in [%s, %s] after %d steps",
            len(occurrences),
            event.id,
            start_date,
            end_date,
            count,
        )
        return occurrences

    def calculate_next_occurrence(self, current: date, pattern: RecurrencePattern) -> date:
        """Advance ``current`` by one pattern step.

        Monthly and yearly steps never overflow into the following month: a
        day that does not exist in the target month (Feb 30, Feb 29 in a
        common year) rolls back to that month's last day.
        """
        interval = pattern.interval
        if pattern.type == RecurrenceType.DAILY:
            return current + timedelta(days=interval)

        if pattern.type == RecurrenceType.WEEKLY:
            # Single-step variant; multi-day weeks go through generate_weekly_occurrences
            return current + timedelta(days=7 * interval)

        if pattern.type == RecurrenceType.MONTHLY:
            stepped = current + relativedelta(months=interval)
            if pattern.day_of_month:
                return _clamp_day(stepped.year, stepped.month, pattern.day_of_month)
            return stepped

        if pattern.type == RecurrenceType.YEARLY:
            stepped = current + relativedelta(years=interval)
            if pattern.month_of_year and pattern.day_of_month:
                return _clamp_day(stepped.year, pattern.month_of_year, pattern.day_of_month)
            return stepped

        raise ValueError(f"Unsupported recurrence type: {pattern.type!r}")

    def generate_weekly_occurrences(
        self, event: CalendarEvent, start_date: date, end_date: date
    ) -> list[CalendarEvent]:
        """Generate weekly occurrences honouring every listed day of week.

        Iterates Sunday-based weeks starting with the anchor's week. Weeks whose
        offset from the anchor week is a multiple of ``interval`` qualify; each
        listed weekday in a qualifying week that lies in the window and not
        before the anchor becomes an occurrence.
        """
        pattern = event.recurrence_pattern
        if pattern is None or pattern.type != RecurrenceType.WEEKLY:
            return []
        if not self._is_steppable(pattern, event):
            return []

        days_of_week = sorted(pattern.weekday_set)
        anchor = event.date
        search_end = min(end_date, self._recurrence_end(pattern))
        max_occurrences = self._max_occurrences(pattern)

        occurrences: list[CalendarEvent] = []
        week_start = _week_start(anchor)
        week_count = 0
        while week_start <= search_end and len(occurrences) < max_occurrences:
            if week_count % pattern.interval == 0:
                for day_of_week in days_of_week:
                    occurrence_date = week_start + timedelta(days=day_of_week)
                    if occurrence_date < anchor or occurrence_date > search_end:
                        continue
                    if occurrence_date < start_date:
                        continue
                    occurrences.append(self._derive(event, occurrence_date))
                    if len(occurrences) >= max_occurrences:
                        break
            week_start += timedelta(days=7)
            week_count += 1

        return occurrences

    def expand_occurrences(
        self, event: CalendarEvent, start_date: date, end_date: date
    ) -> list[CalendarEvent]:
        """Expand an event with the generator that fits its pattern."""
        pattern = event.recurrence_pattern
        if pattern is not None and pattern.type == RecurrenceType.WEEKLY and pattern.days_of_week:
            return self.generate_weekly_occurrences(event, start_date, end_date)
        return self.generate_occurrences(event, start_date, end_date)

    def generate_future_occurrences_from_date(
        self,
        event: CalendarEvent,
        pattern: RecurrencePattern,
        from_date: date,
        end_date: date,
    ) -> list[CalendarEvent]:
        """Preview occurrences of ``event`` under a hypothetical ``pattern``.

        Used to show what a pattern change would produce before committing it.
        The series still starts at the event's anchor; generation begins at
        the first occurrence on or after ``from_date``.
        """
        if not self._is_steppable(pattern, event):
            return []

        recurrence_end = pattern.end_date or end_date
        search_end = min(end_date, recurrence_end)
        max_occurrences = self._max_occurrences(pattern)

        current, count = self._first_on_or_after(event.date, pattern, from_date, max_occurrences)

        occurrences: list[CalendarEvent] = []
        while current <= search_end and count < max_occurrences:
            if from_date <= current <= end_date:
                occurrences.append(self._derive(event, current))
            count += 1
            current = self.calculate_next_occurrence(current, pattern)

        return occurrences

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_next_occurrence(
        self, event: CalendarEvent, from_date: Optional[date] = None
    ) -> Optional[date]:
        """Return the first occurrence strictly after ``from_date`` (default: today).

        Returns:
            The occurrence date, or None when the event is not recurring or the
            series ends first.
        """
        pattern = event.recurrence_pattern
        if pattern is None:
            return None
        if not self._is_steppable(pattern, event):
            return None

        reference = from_date or today()
        if event.date > reference:
            return event.date

        recurrence_end = self._recurrence_end(pattern)
        max_occurrences = self._max_occurrences(pattern)

        current = event.date
        count = 0
        while current <= recurrence_end and count < max_occurrences:
            if current > reference:
                return current
            current = self.calculate_next_occurrence(current, pattern)
            count += 1

        return None

    def get_future_occurrences(
        self, event: CalendarEvent, limit: Optional[int] = None
    ) -> list[CalendarEvent]:
        """Return up to ``limit`` occurrences strictly after today."""
        if event.recurrence_pattern is None:
            return []

        if limit is None:
            limit = self.config.default_future_limit
        now = today()
        horizon = now + relativedelta(years=self.config.future_window_years)

        occurrences = self.generate_occurrences(event, now, horizon)
        return [occurrence for occurrence in occurrences if occurrence.date > now][:limit]

    # ------------------------------------------------------------------
    # Matching, validation, comparison
    # ------------------------------------------------------------------

    def matches_pattern(self, candidate: date, anchor: date, pattern: RecurrencePattern) -> bool:
        """Check whether ``candidate`` is an occurrence of ``pattern`` anchored at ``anchor``.

        Independent of generation: decides membership arithmetically, which is
        what reconciliation uses to classify exceptions.
        """
        if candidate < anchor or pattern.interval < 1:
            return False

        if pattern.type == RecurrenceType.DAILY:
            return (candidate - anchor).days % pattern.interval == 0

        if pattern.type == RecurrenceType.WEEKLY:
            weeks_diff = (_week_start(candidate) - _week_start(anchor)).days // 7
            return (
                weeks_diff % pattern.interval == 0
                and _sunday_weekday(candidate) in pattern.weekday_set
            )

        if pattern.type == RecurrenceType.MONTHLY:
            months_diff = (candidate.year - anchor.year) * 12 + (candidate.month - anchor.month)
            return (
                months_diff % pattern.interval == 0
                and candidate.day == (pattern.day_of_month or anchor.day)
            )

        if pattern.type == RecurrenceType.YEARLY:
            years_diff = candidate.year - anchor.year
            return (
                years_diff % pattern.interval == 0
                and candidate.month == (pattern.month_of_year or anchor.month)
                and candidate.day == (pattern.day_of_month or anchor.day)
            )

        return False

    def validate_pattern(self, pattern: RecurrencePattern) -> PatternValidationResult:
        """Validate a pattern and report every violated rule."""
        errors: list[str] = []

        if pattern.type == RecurrenceType.WEEKLY:
            if not pattern.days_of_week:
                errors.append("Weekly recurrence must specify days of week")
            elif any(day < 0 or day > 6 for day in pattern.days_of_week):
                errors.append("Days of week must be between 0 and 6")

        elif pattern.type == RecurrenceType.MONTHLY:
            if pattern.day_of_month is None:
                errors.append("Monthly recurrence must specify day of month")
            elif not 1 <= pattern.day_of_month <= 31:
                errors.append("Day of month must be between 1 and 31")

        elif pattern.type == RecurrenceType.YEARLY:
            if pattern.month_of_year is None or pattern.day_of_month is None:
                errors.append("Yearly recurrence must specify month and day")
            else:
                if not 1 <= pattern.month_of_year <= 12:
                    errors.append("Month of year must be between 1 and 12")
                if not 1 <= pattern.day_of_month <= 31:
                    errors.append("Day of month must be between 1 and 31")

        if pattern.interval < 1:
            errors.append("Interval must be at least 1")

        if pattern.end_after_occurrences is not None and pattern.end_after_occurrences < 1:
            errors.append("Number of occurrences must be at least 1")

        if not pattern.has_end_condition:
            errors.append("Must specify either end date or number of occurrences")

        return PatternValidationResult(valid=not errors, errors=errors)

    def patterns_equal(self, first: RecurrencePattern, second: RecurrencePattern) -> bool:
        """Semantic equality; days of week compare as sets."""
        if first.type != second.type or first.interval != second.interval:
            return False
        if first.end_date != second.end_date:
            return False
        if first.end_after_occurrences != second.end_after_occurrences:
            return False

        if first.type == RecurrenceType.WEEKLY:
            return first.weekday_set == second.weekday_set
        if first.type == RecurrenceType.MONTHLY:
            return first.day_of_month == second.day_of_month
        if first.type == RecurrenceType.YEARLY:
            return (
                first.month_of_year == second.month_of_year
                and first.day_of_month == second.day_of_month
            )
        return True

    def compare_patterns(
        self, first: RecurrencePattern, second: RecurrencePattern
    ) -> PatternComparison:
        """Compare two patterns and describe each differing field."""
        differences: list[str] = []

        if first.type != second.type:
            differences.append(f"Type changed from {first.type.value} to {second.type.value}")
        if first.interval != second.interval:
            differences.append(f"Interval changed from {first.interval} to {second.interval}")
        if first.end_date != second.end_date:
            differences.append(
                f"End date changed from {_describe(first.end_date)} to {_describe(second.end_date)}"
            )
        if first.end_after_occurrences != second.end_after_occurrences:
            differences.append(
                "End after occurrences changed from "
                f"{_describe(first.end_after_occurrences)} to {_describe(second.end_after_occurrences)}"
            )

        if first.type == second.type:
            if first.type == RecurrenceType.WEEKLY and first.weekday_set != second.weekday_set:
                before = ",".join(str(day) for day in sorted(first.weekday_set))
                after = ",".join(str(day) for day in sorted(second.weekday_set))
                differences.append(f"Days of week changed from [{before}] to [{after}]")
            elif first.type in (RecurrenceType.MONTHLY, RecurrenceType.YEARLY):
                if first.type == RecurrenceType.YEARLY and first.month_of_year != second.month_of_year:
                    differences.append(
                        f"Month of year changed from {first.month_of_year} to {second.month_of_year}"
                    )
                if first.day_of_month != second.day_of_month:
                    differences.append(
                        f"Day of month changed from {first.day_of_month} to {second.day_of_month}"
                    )

        return PatternComparison(equal=not differences, differences=differences)

    # ------------------------------------------------------------------
    # Exceptions
    # ------------------------------------------------------------------

    def create_exception(
        self, master: CalendarEvent, occurrence_date: date, changes: dict[str, Any]
    ) -> CalendarEvent:
        """Build (without persisting) an exception overriding one occurrence.

        Args:
            master: Master event of the series
            occurrence_date: Date of the occurrence being overridden
            changes: Field overrides, keyed by Python field name

        Returns:
            Exception event owned by ``master``
        """
        fields = master.model_dump(exclude={"id", "recurrence_pattern", "occurrence_key"})
        fields.update(changes)
        fields.update(
            id=f"{master.id}_exception_{occurrence_date.isoformat()}",
            date=occurrence_date,
            recurrence_id=master.id,
            is_exception=True,
            recurrence_pattern=None,
        )
        return CalendarEvent.model_validate(fields)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _derive(self, master: CalendarEvent, occurrence_date: date) -> CalendarEvent:
        key = DerivedEventId(master_id=master.id, occurrence_date=occurrence_date)
        return master.model_copy(
            update={
                "id": str(key),
                "date": occurrence_date,
                "recurrence_id": master.id,
                "recurrence_pattern": None,
                "is_exception": False,
                "occurrence_key": key,
            }
        )

    def _is_steppable(self, pattern: RecurrencePattern, event: CalendarEvent) -> bool:
        if pattern.interval < 1:
            logger.warning(
                "Cannot step pattern with interval %d for event %s", pattern.interval, event.id
            )
            return False
        return True

    def _recurrence_end(self, pattern: RecurrencePattern) -> date:
        return pattern.end_date or self.config.default_end_date

    def _max_occurrences(self, pattern: RecurrencePattern) -> int:
        if pattern.end_after_occurrences is None:
            return self.config.max_occurrences
        return max(pattern.end_after_occurrences, 0)

    def _first_on_or_after(
        self,
        anchor: date,
        pattern: RecurrencePattern,
        target: date,
        max_occurrences: int,
    ) -> tuple[date, int]:
        """Step from the anchor to the first occurrence on or after ``target``.

        Returns:
            (occurrence date, number of occurrences stepped over)
        """
        current = anchor
        count = 0
        while current < target and count < max_occurrences:
            current = self.calculate_next_occurrence(current, pattern)
            count += 1
        return current, count


def _describe(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


# Global engine instance (created on first use)
_engine: Optional[RecurrenceEngine] = None


def get_recurrence_engine(settings: Any = None) -> RecurrenceEngine:
    """Get or create the process-wide recurrence engine.

    Args:
        settings: Configuration settings, only used when the engine is created

    Returns:
        RecurrenceEngine instance
    """
    global _engine
    if _engine is None:
        _engine = RecurrenceEngine(settings)
    return _engine
