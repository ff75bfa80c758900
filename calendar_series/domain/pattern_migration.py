"""Store-wide recurrence pattern migration.

Wraps the coordinator's repair pass with the surrounding operational steps:
log the starting state, repair masters, clean up rows that break the series
role rules, re-validate, and report.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Optional

from calendar_series.calendar.models import CalendarEvent, MigrationReport
from calendar_series.exceptions import MigrationError

from .repository import EventRepository
from .series_coordinator import SeriesCoordinator

logger = logging.getLogger(__name__)

_RULE = "=" * 50


def _distribution(masters: list[CalendarEvent]) -> dict[str, int]:
    counts = Counter(
        master.recurrence_pattern.type.value
        for master in masters
        if master.recurrence_pattern is not None
    )
    return dict(sorted(counts.items()))


class RecurrencePatternMigration:
    """Repairs every recurring series in a repository."""

    def __init__(
        self,
        repository: EventRepository,
        coordinator: Optional[SeriesCoordinator] = None,
        settings: Any = None,
    ) -> None:
        self.repository = repository
        self.coordinator = coordinator or SeriesCoordinator(repository, settings=settings)
        self.engine = self.coordinator.engine

    def run(self) -> MigrationReport:
        """Run the full migration and return its report.

        Raises:
            MigrationError: If the repository cannot be listed
        """
        logger.info("Starting recurrence pattern migration")

        self._log_current_state()
        summary = self.coordinator.migrate_existing_recurring_events()
        roles_repaired = self._cleanup_inconsistent_data()

        report = self._build_report()
        report.summary = summary
        report.roles_repaired = roles_repaired
        self._log_report(report)

        logger.info("Recurrence pattern migration completed")
        return report

    def rollback(self) -> None:
        """Migrations are not reversible in place.

        Raises:
            NotImplementedError: Always, with manual recovery steps in the message
        """
        raise NotImplementedError(
            "Rollback of the recurrence pattern migration is not supported. To recover: "
            "1) restore the event store from a backup, "
            "2) review and fix problematic recurring events by hand, "
            "3) re-run the migration to validate the result."
        )

    def _log_current_state(self) -> None:
        masters = self._list(self.repository.find_recurring_events)
        logger.info("Found %d recurring events before migration", len(masters))
        logger.info("Pattern distribution: %s", _distribution(masters))

    def _cleanup_inconsistent_data(self) -> int:
        """Repair rows that break the series role rules.

        Returns:
            Number of rows rewritten
        """
        logger.info("Cleaning up inconsistent data")
        repaired = 0

        for event in self._list(self.repository.find_all):
            patch: dict[str, Any] = {}

            if event.recurrence_pattern is not None and event.recurrence_id:
                patch["recurrence_id"] = None
                logger.info("Removed recurrenceId from master event %s", event.id)
            elif event.recurrence_id and self.repository.find_by_id(event.recurrence_id) is None:
                patch["recurrence_id"] = None
                logger.info(
                    "Detached event %s from missing master %s", event.id, event.recurrence_id
                )

            if event.is_exception and (not event.recurrence_id or "recurrence_id" in patch):
                patch["is_exception"] = False
                logger.info("Removed exception flag from event without recurrenceId %s", event.id)

            if not patch:
                continue
            try:
                self.repository.update(event.id, patch)
            except Exception as exc:
                logger.error("Could not clean up event %s: %s", event.id, exc)
                continue
            repaired += 1

        logger.info("Data cleanup completed: %d events repaired", repaired)
        return repaired

    def _build_report(self) -> MigrationReport:
        masters = self._list(self.repository.find_recurring_events)
        derived = [event for event in self._list(self.repository.find_all) if event.recurrence_id]

        valid = 0
        invalid = 0
        for master in masters:
            if master.recurrence_pattern is None:
                continue
            validation = self.engine.validate_pattern(master.recurrence_pattern)
            if validation.valid:
                valid += 1
            else:
                invalid += 1
                logger.warning(
                    "Invalid recurring event %s: %s", master.id, ", ".join(validation.errors)
                )

        return MigrationReport(
            total_masters=len(masters),
            total_derived=len(derived),
            total_exceptions=sum(1 for event in derived if event.is_exception),
            pattern_distribution=_distribution(masters),
            valid_patterns=valid,
            invalid_patterns=invalid,
        )

    def _log_report(self, report: MigrationReport) -> None:
        logger.info(_RULE)
        logger.info("MIGRATION REPORT")
        logger.info(_RULE)
        logger.info("Total recurring events: %d", report.total_masters)
        logger.info("Total instances: %d", report.total_derived)
        logger.info("Total exceptions: %d", report.total_exceptions)
        logger.info("Pattern distribution after migration:")
        for pattern_type, count in report.pattern_distribution.items():
            logger.info("  %s: %d", pattern_type, count)
        logger.info("Valid patterns: %d", report.valid_patterns)
        logger.info("Invalid patterns: %d", report.invalid_patterns)
        logger.info("Role fixes: %d", report.roles_repaired)
        if report.needs_attention:
            logger.warning(
                "%d events still have invalid patterns and %d could not be migrated; "
                "manual attention needed",
                report.invalid_patterns,
                report.summary.errors,
            )
        else:
            logger.info("All recurring events have valid patterns")
        logger.info(_RULE)

    @staticmethod
    def _list(query: Any) -> list[CalendarEvent]:
        try:
            return query()
        except MigrationError:
            raise
        except Exception as exc:
            logger.error("Error reading event store: %s", exc)
            raise MigrationError(f"Failed to read event store: {exc}") from exc
