"""Master/instance/exception lifecycle for recurring series.

The coordinator is the only component that mutates series state. It combines
the pure calendar math of :class:`RecurrenceEngine` with an injected
:class:`EventRepository`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from calendar_series.calendar.models import (
    DELETED_TITLE,
    BulkUpdateFailure,
    BulkUpdateResult,
    CalendarEvent,
    EventRole,
    MigrationSummary,
    PatternUpdate,
    RecurrencePattern,
    RecurrenceType,
)
from calendar_series.calendar.recurrence_engine import RecurrenceEngine, get_recurrence_engine
from calendar_series.core.clock import today
from calendar_series.exceptions import (
    EventNotFoundError,
    InvalidPatternError,
    MigrationError,
    NotRecurringError,
    ReconciliationError,
)

from .repository import EventRepository

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("calendar_series.audit")

# Fields an exception may override; compared when deciding whether it is redundant
_SIGNIFICANT_FIELDS = ("title", "description", "time", "type")

# Fields that define series membership; changed only through dedicated operations
_ROLE_FIELDS = frozenset({"id", "recurrence_pattern", "recurrence_id", "is_exception"})

SCOPE_SINGLE = "single"
SCOPE_ALL = "all"

DELETED_DESCRIPTION = "This occurrence was deleted"


def _normalized(value: Any) -> Any:
    """Canonical form used by the significant-change diff (None and "" are equal)."""
    if value is None:
        return ""
    if hasattr(value, "value"):
        return value.value
    return value


def significant_changes(exception: CalendarEvent, master: CalendarEvent) -> list[str]:
    """Return the names of visible fields where ``exception`` differs from ``master``."""
    return [
        field
        for field in _SIGNIFICANT_FIELDS
        if _normalized(getattr(exception, field)) != _normalized(getattr(master, field))
    ]


def _pattern_json(pattern: Optional[RecurrencePattern]) -> str:
    if pattern is None:
        return "none"
    return pattern.model_dump_json(by_alias=True, exclude_none=True)


class SeriesCoordinator:
    """Coordinates recurring series stored in an :class:`EventRepository`."""

    def __init__(
        self,
        repository: EventRepository,
        engine: Optional[RecurrenceEngine] = None,
        settings: Any = None,
    ) -> None:
        self.repository = repository
        self.engine = engine or get_recurrence_engine(settings)
        self.fix_weekly_from_anchor = bool(getattr(settings, "fix_weekly_from_anchor", False))

    # ------------------------------------------------------------------
    # Role resolution
    # ------------------------------------------------------------------

    def resolve_master(self, event_id: str) -> CalendarEvent:
        """Return the master of the series ``event_id`` belongs to.

        Raises:
            EventNotFoundError: If the event, or the master it references, is missing
            NotRecurringError: If the resolved event carries no recurrence pattern
        """
        event = self.repository.find_by_id(event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        if event.recurrence_id:
            master = self.repository.find_by_id(event.recurrence_id)
            if master is None:
                raise EventNotFoundError(
                    event.recurrence_id,
                    f"Master event {event.recurrence_id} of {event_id} not found",
                )
            event = master

        if event.recurrence_pattern is None:
            raise NotRecurringError(event.id)
        return event

    # ------------------------------------------------------------------
    # Pattern changes
    # ------------------------------------------------------------------

    def update_recurrence_pattern(
        self,
        event_id: str,
        new_pattern: RecurrencePattern,
        effective_date: Optional[date] = None,
    ) -> CalendarEvent:
        """Change the pattern of a live series.

        Future persisted occurrences are reconciled first; the new pattern is
        persisted only afterwards. A failure part-way leaves the old pattern in
        place and the call can be repeated: reconciliation deletes are
        idempotent.

        Args:
            event_id: Master id, or the id of any instance or exception of the series
            new_pattern: Replacement pattern
            effective_date: First date reconciled against the new pattern (default: today)

        Returns:
            The master event. Unchanged (and nothing written) when the new
            pattern is semantically equal to the current one.

        Raises:
            EventNotFoundError: Event or master missing
            NotRecurringError: The series has no pattern
            InvalidPatternError: ``new_pattern`` fails validation
            ReconciliationError: The repository failed during reconciliation
        """
        master = self.resolve_master(event_id)

        validation = self.engine.validate_pattern(new_pattern)
        if not validation.valid:
            raise InvalidPatternError(validation.errors)

        current_pattern = master.recurrence_pattern
        if current_pattern is None:
            raise NotRecurringError(master.id)
        if self.engine.patterns_equal(current_pattern, new_pattern):
            logger.debug("Pattern for event %s unchanged; nothing to do", master.id)
            return master

        change_date = effective_date or today()
        comparison = self.engine.compare_patterns(current_pattern, new_pattern)

        self._handle_future_occurrences_for_pattern_change(master, new_pattern, change_date)
        updated = self.repository.update(master.id, {"recurrence_pattern": new_pattern})

        audit_logger.info(
            "Recurrence pattern updated for event %s effective %s: %s (old=%s new=%s)",
            master.id,
            change_date.isoformat(),
            "; ".join(comparison.differences),
            _pattern_json(current_pattern),
            _pattern_json(new_pattern),
        )
        return updated

    def _handle_future_occurrences_for_pattern_change(
        self, master: CalendarEvent, new_pattern: RecurrencePattern, effective_date: date
    ) -> None:
        """Delete or keep persisted future rows of ``master`` ahead of a pattern change."""
        old_pattern = master.recurrence_pattern
        if old_pattern is None:
            raise NotRecurringError(master.id)
        anchor = master.date

        try:
            rows = self.repository.find_by_recurrence_id(master.id)
            future_instances = [
                row for row in rows if not row.is_exception and row.date >= effective_date
            ]
            future_exceptions = [
                row
                for row in self.repository.find_exceptions(master.id)
                if row.date >= effective_date
            ]

            logger.info(
                "Processing pattern change for event %s: %d future instances, "
                "%d future exceptions, effective %s",
                master.id,
                len(future_instances),
                len(future_exceptions),
                effective_date,
            )

            for instance in future_instances:
                self.repository.delete(instance.id)
                logger.debug("Deleted future instance %s for date %s", instance.id, instance.date)

            for exception in future_exceptions:
                in_old = self.engine.matches_pattern(exception.date, anchor, old_pattern)
                in_new = self.engine.matches_pattern(exception.date, anchor, new_pattern)

                if in_old and in_new:
                    changed = significant_changes(exception, master)
                    if changed:
                        logger.debug(
                            "Keeping exception %s - has significant changes (%s)",
                            exception.id,
                            ", ".join(changed),
                        )
                    else:
                        self.repository.delete(exception.id)
                        logger.debug(
                            "Removed exception %s - will be regenerated by new pattern",
                            exception.id,
                        )
                elif in_old:
                    logger.debug("Keeping exception %s - date not in new pattern", exception.id)
                elif in_new:
                    logger.debug(
                        "Keeping exception %s - unusual case (not in old, in new)", exception.id
                    )
                else:
                    logger.debug("Keeping exception %s - not in either pattern", exception.id)
        except Exception as exc:
            logger.error("Error handling future occurrences for event %s: %s", master.id, exc)
            raise ReconciliationError(
                f"Failed to update future occurrences for event {master.id}: {exc}"
            ) from exc

        preview_end = effective_date + relativedelta(months=self.engine.config.preview_window_months)
        preview = self.engine.generate_future_occurrences_from_date(
            master, new_pattern, effective_date, preview_end
        )
        logger.info(
            "Pattern change for event %s will generate %d occurrences in the next %d months",
            master.id,
            len(preview),
            self.engine.config.preview_window_months,
        )

    def bulk_update_recurrence_patterns(
        self, updates: Iterable[PatternUpdate | Mapping[str, Any]]
    ) -> BulkUpdateResult:
        """Apply pattern updates one after another, recording per-update failures.

        A failure never stops the remaining updates, and updates already
        applied are not rolled back.
        """
        result = BulkUpdateResult()
        items = [
            item if isinstance(item, PatternUpdate) else PatternUpdate.model_validate(item)
            for item in updates
        ]
        logger.info("Starting bulk update of %d recurrence patterns", len(items))

        for item in items:
            try:
                self.update_recurrence_pattern(item.event_id, item.new_pattern, item.effective_date)
            except Exception as exc:
                result.failed.append(BulkUpdateFailure(event_id=item.event_id, error=str(exc)))
                logger.error("Failed to update pattern for event %s: %s", item.event_id, exc)
            else:
                result.successful.append(item.event_id)
                logger.debug("Successfully updated pattern for event %s", item.event_id)

        logger.info(
            "Bulk update completed: %d successful, %d failed",
            len(result.successful),
            len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Repair pass
    # ------------------------------------------------------------------

    def migrate_existing_recurring_events(self) -> MigrationSummary:
        """Validate and repair every master in the store.

        Per-event problems are logged and counted; the pass always completes.

        Raises:
            MigrationError: If the list of masters cannot be read at all
        """
        logger.info("Starting migration of existing recurring events")
        try:
            masters = self.repository.find_recurring_events()
        except Exception as exc:
            logger.error("Error during recurring events migration: %s", exc)
            raise MigrationError(f"Failed to migrate existing recurring events: {exc}") from exc

        logger.info("Found %d recurring events to process", len(masters))
        summary = MigrationSummary()

        for master in masters:
            pattern = master.recurrence_pattern
            if pattern is None:
                continue

            try:
                validation = self.engine.validate_pattern(pattern)
                if validation.valid:
                    summary.valid += 1
                else:
                    logger.warning(
                        "Invalid recurrence pattern found for event %s: %s",
                        master.id,
                        ", ".join(validation.errors),
                    )
                    fixed = self._attempt_pattern_fix(pattern, master.date)
                    fix_validation = self.engine.validate_pattern(fixed)
                    if fix_validation.valid:
                        self.repository.update(master.id, {"recurrence_pattern": fixed})
                        logger.info("Fixed recurrence pattern for event %s", master.id)
                        summary.fixed += 1
                    else:
                        logger.error(
                            "Could not fix pattern for event %s: %s",
                            master.id,
                            ", ".join(fix_validation.errors),
                        )
                        summary.errors += 1

                summary.orphans_removed += self._cleanup_orphaned_instances(master.id)
                summary.instances_repaired += self._ensure_pattern_consistency(master.id)
            except Exception as exc:
                logger.error("Error processing event %s: %s", master.id, exc)
                summary.errors += 1

        logger.info(
            "Migration completed: %d valid, %d fixed, %d errors",
            summary.valid,
            summary.fixed,
            summary.errors,
        )
        if summary.errors:
            logger.warning(
                "%d events could not be migrated and may need manual attention", summary.errors
            )
        return summary

    def _attempt_pattern_fix(self, pattern: RecurrencePattern, anchor: date) -> RecurrencePattern:
        """Fill in the fields most commonly missing from stored patterns.

        Out-of-range values are left alone, so the caller must re-validate.
        """
        fixes: dict[str, Any] = {}

        if pattern.interval < 1:
            fixes["interval"] = 1

        if pattern.type == RecurrenceType.WEEKLY and not pattern.days_of_week:
            source = anchor if self.fix_weekly_from_anchor else today()
            fixes["days_of_week"] = [(source.weekday() + 1) % 7]

        if pattern.type == RecurrenceType.MONTHLY and pattern.day_of_month is None:
            fixes["day_of_month"] = 1

        if pattern.type == RecurrenceType.YEARLY:
            if pattern.month_of_year is None:
                fixes["month_of_year"] = 1
            if pattern.day_of_month is None:
                fixes["day_of_month"] = 1

        if not pattern.has_end_condition:
            fixes["end_after_occurrences"] = 10

        return pattern.model_copy(update=fixes)

    def _cleanup_orphaned_instances(self, master_id: str) -> int:
        """Delete rows filed under ``master_id`` whose master no longer exists."""
        removed = 0
        for row in self.repository.find_by_recurrence_id(master_id):
            if self.repository.find_by_id(row.recurrence_id or master_id) is None:
                self.repository.delete(row.id)
                logger.info("Cleaned up orphaned instance %s", row.id)
                removed += 1
        if removed:
            logger.info("Cleaned up %d orphaned instances for event %s", removed, master_id)
        return removed

    def _ensure_pattern_consistency(self, master_id: str) -> int:
        """Force plain instances back in line with their master.

        Returns:
            Number of instances rewritten
        """
        master = self.repository.find_by_id(master_id)
        if master is None or master.recurrence_pattern is None:
            return 0

        repaired = 0
        for instance in self.repository.find_by_recurrence_id(master_id):
            if instance.is_exception:
                continue

            patch: dict[str, Any] = {
                field: getattr(master, field)
                for field in _SIGNIFICANT_FIELDS
                if getattr(instance, field) != getattr(master, field)
            }
            if instance.recurrence_pattern is not None:
                patch["recurrence_pattern"] = None

            if patch:
                self.repository.update(instance.id, patch)
                repaired += 1

        if repaired:
            logger.info("Fixed %d inconsistent instances for event %s", repaired, master_id)
        return repaired

    # ------------------------------------------------------------------
    # Series lifecycle
    # ------------------------------------------------------------------

    def create_recurring_event(
        self, event_data: CalendarEvent | Mapping[str, Any], pattern: RecurrencePattern
    ) -> CalendarEvent:
        """Validate ``pattern`` and persist a new master event.

        Raises:
            InvalidPatternError: If ``pattern`` fails validation
        """
        validation = self.engine.validate_pattern(pattern)
        if not validation.valid:
            raise InvalidPatternError(validation.errors)

        if isinstance(event_data, CalendarEvent):
            fields = event_data.model_dump(exclude={"occurrence_key"})
        else:
            fields = dict(event_data)
        fields.update(recurrence_pattern=pattern, recurrence_id=None, is_exception=False)

        master = self.repository.create(fields)
        logger.info("Created recurring event %s (%s)", master.id, pattern.type.value)
        return master

    def update_recurring_event(
        self, event_id: str, changes: Mapping[str, Any], scope: str = SCOPE_SINGLE
    ) -> CalendarEvent:
        """Update one occurrence or a whole series.

        ``scope="single"`` on a master overrides only its anchor occurrence by
        writing an exception; on an instance, exception or plain event it
        updates that row. ``scope="all"`` updates the master.

        Raises:
            EventNotFoundError: If the event does not exist
            ValueError: Unknown scope, or ``changes`` touches series role fields
        """
        self._check_scope(scope)
        role_changes = _ROLE_FIELDS.intersection(changes)
        if role_changes:
            raise ValueError(
                f"Cannot change {', '.join(sorted(role_changes))} here; "
                "use update_recurrence_pattern for pattern changes"
            )

        event = self.repository.find_by_id(event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        if scope == SCOPE_ALL:
            if event.recurrence_id:
                master = self.repository.find_by_id(event.recurrence_id)
                if master is not None:
                    return self.repository.update(master.id, changes)
            return self.repository.update(event.id, changes)

        if event.role is EventRole.MASTER:
            return self._write_exception(event, event.date, changes)
        return self.repository.update(event.id, changes)

    def delete_recurring_event(self, event_id: str, scope: str = SCOPE_SINGLE) -> None:
        """Delete one occurrence or a whole series.

        ``scope="single"`` on a master marks its anchor occurrence deleted with
        a ``[DELETED]`` exception; otherwise the row itself is deleted.
        ``scope="all"`` deletes the master and every row referencing it.

        Raises:
            EventNotFoundError: If the event does not exist
            ValueError: Unknown scope
        """
        self._check_scope(scope)
        event = self.repository.find_by_id(event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        if scope == SCOPE_SINGLE:
            if event.role is EventRole.MASTER:
                self._write_exception(
                    event,
                    event.date,
                    {"title": DELETED_TITLE, "description": DELETED_DESCRIPTION},
                )
            else:
                self.repository.delete(event.id)
            return

        master_id = event.recurrence_id or event.id
        self.repository.delete(master_id)
        rows = self.repository.find_by_recurrence_id(master_id)
        for row in rows:
            self.repository.delete(row.id)
        logger.info("Deleted series %s (%d dependent rows)", master_id, len(rows))

    def get_events_with_recurring(self, start_date: date, end_date: date) -> list[CalendarEvent]:
        """Return everything visible in ``[start_date, end_date]``.

        Plain events in range, the generated occurrences of every master, and
        persisted exceptions in place of the occurrences they override.
        Occurrences marked deleted are left out.
        """
        events = [
            event
            for event in self.repository.find_by_date_range(start_date, end_date)
            if event.role is EventRole.PLAIN
        ]

        for master in self.repository.find_recurring_events():
            occurrences = self.engine.expand_occurrences(master, start_date, end_date)
            exceptions = [
                exception
                for exception in self.repository.find_exceptions(master.id)
                if start_date <= exception.date <= end_date
            ]
            events.extend(self._merge_exceptions(occurrences, exceptions))

        return sorted(events, key=lambda e: (e.date, e.id))

    def get_event_series(self, series_id: str) -> list[CalendarEvent]:
        """Return the series ``series_id`` belongs to, from its anchor to the future window.

        A plain event is returned on its own.

        Raises:
            EventNotFoundError: If the event or its master is missing
        """
        event = self.repository.find_by_id(series_id)
        if event is None:
            raise EventNotFoundError(series_id, "Event series not found")

        master = event
        if event.recurrence_id:
            master = self.repository.find_by_id(event.recurrence_id)
            if master is None:
                raise EventNotFoundError(event.recurrence_id, "Event series not found")

        if master.recurrence_pattern is None:
            return [master]

        horizon = today() + relativedelta(years=self.engine.config.future_window_years)
        occurrences = self.engine.expand_occurrences(master, master.date, horizon)
        exceptions = self.repository.find_exceptions(master.id)
        return sorted(self._merge_exceptions(occurrences, exceptions), key=lambda e: (e.date, e.id))

    def get_next_occurrence(self, event_id: str) -> Optional[date]:
        """Next occurrence date of the series ``event_id`` belongs to, after today."""
        return self.engine.get_next_occurrence(self._series_event(event_id))

    def get_future_occurrences(
        self, event_id: str, limit: Optional[int] = None
    ) -> list[CalendarEvent]:
        """Upcoming occurrences of the series ``event_id`` belongs to."""
        return self.engine.get_future_occurrences(self._series_event(event_id), limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _series_event(self, event_id: str) -> CalendarEvent:
        event = self.repository.find_by_id(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if event.recurrence_id:
            master = self.repository.find_by_id(event.recurrence_id)
            if master is not None:
                return master
        return event

    def _write_exception(
        self, master: CalendarEvent, occurrence_date: date, changes: Mapping[str, Any]
    ) -> CalendarEvent:
        exception = self.engine.create_exception(master, occurrence_date, dict(changes))
        if self.repository.find_by_id(exception.id) is not None:
            return self.repository.update(exception.id, dict(changes))
        return self.repository.create(exception)

    @staticmethod
    def _merge_exceptions(
        occurrences: list[CalendarEvent], exceptions: list[CalendarEvent]
    ) -> list[CalendarEvent]:
        overridden = {exception.date for exception in exceptions}
        merged = [occurrence for occurrence in occurrences if occurrence.date not in overridden]
        merged.extend(exception for exception in exceptions if not exception.is_deleted_marker)
        return merged

    @staticmethod
    def _check_scope(scope: str) -> None:
        if scope not in (SCOPE_SINGLE, SCOPE_ALL):
            raise ValueError(f"scope must be {SCOPE_SINGLE!r} or {SCOPE_ALL!r}, got {scope!r}")
