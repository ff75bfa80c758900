"""Unit tests for pattern changes, bulk updates and the repair pass.

Today is pinned to 2024-01-15 (a Monday) by conftest.
"""

import logging
from datetime import date
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from calendar_series.calendar.models import (
    BulkUpdateFailure,
    CalendarEvent,
    PatternUpdate,
    RecurrencePattern,
)
from calendar_series.domain.repository import InMemoryEventRepository
from calendar_series.domain.series_coordinator import SeriesCoordinator, significant_changes
from calendar_series.exceptions import (
    EventNotFoundError,
    InvalidPatternError,
    MigrationError,
    NotRecurringError,
    ReconciliationError,
    RepositoryError,
)

pytestmark = [pytest.mark.unit, pytest.mark.fast]

EVERY_OTHER_DAY = {"type": "daily", "interval": 2, "endAfterOccurrences": 100}
EVERY_THIRD_DAY = {"type": "daily", "interval": 3, "endAfterOccurrences": 100}


def _pattern(fields) -> RecurrencePattern:
    return RecurrencePattern.model_validate(fields)


def _derived(event_id, on, master_id="m1", is_exception=False, **fields) -> dict:
    fields.setdefault("title", "Standup")
    fields.setdefault("time", "09:00")
    return {
        "id": event_id,
        "date": on,
        "recurrence_id": master_id,
        "is_exception": is_exception,
        **fields,
    }


@pytest.fixture
def master(repository: InMemoryEventRepository) -> CalendarEvent:
    return repository.create(
        {
            "id": "m1",
            "title": "Standup",
            "date": date(2024, 1, 1),
            "time": "09:00",
            "recurrence_pattern": EVERY_OTHER_DAY,
        }
    )


@pytest.fixture
def spy_repository(repository: InMemoryEventRepository) -> MagicMock:
    return MagicMock(wraps=repository)


class TestResolveMaster:
    def test_resolve_when_master_id_then_master(self, coordinator, master) -> None:
        assert coordinator.resolve_master("m1").id == "m1"

    def test_resolve_when_derived_id_then_its_master(self, coordinator, repository, master) -> None:
        repository.create(_derived("i1", date(2024, 1, 3)))

        assert coordinator.resolve_master("i1").id == "m1"

    def test_resolve_when_missing_then_not_found(self, coordinator) -> None:
        with pytest.raises(EventNotFoundError) as exc_info:
            coordinator.resolve_master("nope")

        assert exc_info.value.event_id == "nope"

    def test_resolve_when_master_missing_then_not_found(self, coordinator, repository) -> None:
        repository.create(_derived("i1", date(2024, 1, 3), master_id="gone"))

        with pytest.raises(EventNotFoundError) as exc_info:
            coordinator.resolve_master("i1")

        assert exc_info.value.event_id == "gone"

    def test_resolve_when_plain_event_then_not_recurring(self, coordinator, repository) -> None:
        repository.create({"id": "p1", "title": "Lunch", "date": date(2024, 1, 2)})

        with pytest.raises(NotRecurringError, match="Event is not a recurring event"):
            coordinator.resolve_master("p1")


class TestUpdateRecurrencePattern:
    def test_update_when_invalid_pattern_then_all_errors_reported(self, coordinator, master) -> None:
        with pytest.raises(InvalidPatternError) as exc_info:
            coordinator.update_recurrence_pattern("m1", _pattern({"type": "weekly", "interval": 0}))

        assert exc_info.value.errors == [
            "Weekly recurrence must specify days of week",
            "Interval must be at least 1",
            "Must specify either end date or number of occurrences",
        ]
        assert str(exc_info.value).startswith("Invalid recurrence pattern: Weekly recurrence")

    def test_update_when_missing_event_then_not_found(self, coordinator) -> None:
        with pytest.raises(EventNotFoundError):
            coordinator.update_recurrence_pattern("missing", _pattern(EVERY_THIRD_DAY))

    def test_update_when_new_pattern_then_persisted_on_master(
        self, coordinator, repository, master
    ) -> None:
        updated = coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY))

        assert updated.recurrence_pattern == _pattern(EVERY_THIRD_DAY)
        assert repository.find_by_id("m1").recurrence_pattern.interval == 3

    def test_update_when_called_through_instance_then_master_updated(
        self, coordinator, repository, master
    ) -> None:
        repository.create(_derived("i1", date(2024, 1, 3)))

        updated = coordinator.update_recurrence_pattern("i1", _pattern(EVERY_THIRD_DAY))

        assert updated.id == "m1"

    def test_update_when_same_pattern_twice_then_second_call_is_noop(
        self, repository, engine, master
    ) -> None:
        repository.create(_derived("i1", date(2024, 1, 21)))
        spy = MagicMock(wraps=repository)
        coordinator = SeriesCoordinator(spy, engine)

        coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY))
        assert spy.update.call_count == 1
        assert spy.delete.call_count == 1

        result = coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY))

        assert spy.update.call_count == 1
        assert spy.delete.call_count == 1
        assert result.recurrence_pattern.interval == 3

    def test_update_when_equal_pattern_with_reordered_days_then_nothing_written(
        self, repository, engine
    ) -> None:
        repository.create(
            {
                "id": "w1",
                "title": "Gym",
                "date": date(2024, 1, 1),
                "recurrence_pattern": {"type": "weekly", "daysOfWeek": [1, 3, 5], "endAfterOccurrences": 9},
            }
        )
        spy = MagicMock(wraps=repository)

        SeriesCoordinator(spy, engine).update_recurrence_pattern(
            "w1", _pattern({"type": "weekly", "daysOfWeek": [5, 1, 3], "endAfterOccurrences": 9})
        )

        spy.update.assert_not_called()
        spy.delete.assert_not_called()

    def test_update_when_audit_enabled_then_change_logged(self, coordinator, master, caplog) -> None:
        caplog.set_level(logging.INFO, logger="calendar_series.audit")

        coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY), date(2024, 2, 1))

        audit = [r for r in caplog.records if r.name == "calendar_series.audit"]
        assert len(audit) == 1
        message = audit[0].getMessage()
        assert "m1" in message
        assert "2024-02-01" in message
        assert "Interval changed from 2 to 3" in message


class TestReconciliation:
    """Future instances are dropped; exceptions are kept unless redundant."""

    def test_reconcile_when_exception_in_neither_pattern_then_instance_deleted_exception_kept(
        self, coordinator, repository, master
    ) -> None:
        repository.create(_derived("inst", date(2024, 1, 21)))
        repository.create(_derived("exc", date(2024, 1, 20), is_exception=True, title="Moved"))

        coordinator.update_recurrence_pattern(
            "m1", _pattern({"type": "daily", "interval": 4, "endAfterOccurrences": 100})
        )

        assert repository.find_by_id("inst") is None
        assert repository.find_by_id("exc") is not None

    def test_reconcile_when_exceptions_classified_then_only_redundant_removed(
        self, coordinator, repository, master
    ) -> None:
        # Anchor 2024-01-01; old pattern every 2 days, new pattern every 3 days
        repository.create(_derived("both-same", date(2024, 1, 19), is_exception=True, description=""))
        repository.create(_derived("both-edited", date(2024, 1, 25), is_exception=True, title="Demo"))
        repository.create(_derived("old-only", date(2024, 1, 17), is_exception=True))
        repository.create(_derived("new-only", date(2024, 1, 22), is_exception=True))
        repository.create(_derived("neither", date(2024, 1, 20), is_exception=True))
        repository.create(_derived("past-same", date(2024, 1, 7), is_exception=True))
        repository.create(_derived("past-instance", date(2024, 1, 3)))

        coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY))

        remaining = {event.id for event in repository.find_by_recurrence_id("m1")}
        assert remaining == {
            "both-edited",
            "old-only",
            "new-only",
            "neither",
            "past-same",
            "past-instance",
        }

    def test_reconcile_when_effective_date_later_then_earlier_rows_untouched(
        self, coordinator, repository, master
    ) -> None:
        repository.create(_derived("inst", date(2024, 1, 17)))
        repository.create(_derived("both-same", date(2024, 1, 19), is_exception=True))

        coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY), date(2024, 1, 21))

        assert repository.find_by_id("inst") is not None
        assert repository.find_by_id("both-same") is not None

    def test_reconcile_when_repository_fails_then_reconciliation_error_and_old_pattern_kept(
        self, repository, spy_repository, engine, master
    ) -> None:
        repository.create(_derived("inst", date(2024, 1, 21)))
        spy_repository.delete.side_effect = RepositoryError("disk full")
        coordinator = SeriesCoordinator(spy_repository, engine)

        with pytest.raises(ReconciliationError):
            coordinator.update_recurrence_pattern("m1", _pattern(EVERY_THIRD_DAY))

        assert repository.find_by_id("m1").recurrence_pattern == _pattern(EVERY_OTHER_DAY)
        spy_repository.update.assert_not_called()

    def test_significant_changes_when_none_and_empty_then_equal(self, make_event) -> None:
        master = make_event(description=None, time=None)
        exception = make_event(event_id="x", description="", time="")

        assert significant_changes(exception, master) == []

    def test_significant_changes_when_fields_differ_then_named(self, make_event) -> None:
        master = make_event()
        exception = make_event(event_id="x", title="Other", type="exam")

        assert significant_changes(exception, master) == ["title", "type"]


class TestBulkUpdate:
    def test_bulk_when_one_update_fails_then_others_still_applied(
        self, coordinator, repository, master
    ) -> None:
        result = coordinator.bulk_update_recurrence_patterns(
            [
                PatternUpdate(event_id="m1", new_pattern=_pattern(EVERY_THIRD_DAY)),
                PatternUpdate(event_id="nonexistent", new_pattern=_pattern(EVERY_THIRD_DAY)),
            ]
        )

        assert result.successful == ["m1"]
        assert result.failed == [
            BulkUpdateFailure(event_id="nonexistent", error="Event not found: nonexistent")
        ]
        assert result.all_succeeded is False
        assert repository.find_by_id("m1").recurrence_pattern.interval == 3

    def test_bulk_when_mappings_given_then_parsed(self, coordinator, master) -> None:
        result = coordinator.bulk_update_recurrence_patterns(
            [{"eventId": "m1", "newPattern": {"type": "daily", "interval": 1}}]
        )

        assert result.successful == []
        assert result.failed[0].event_id == "m1"
        assert "Must specify either end date" in result.failed[0].error

    def test_bulk_when_empty_then_empty_result(self, coordinator) -> None:
        result = coordinator.bulk_update_recurrence_patterns([])

        assert result.successful == []
        assert result.failed == []


class TestMigrateExistingRecurringEvents:
    def _master(self, repository, event_id, pattern, on=date(2024, 1, 1)) -> None:
        repository.create(
            {"id": event_id, "title": "Series", "date": on, "recurrence_pattern": pattern}
        )

    def test_migrate_when_patterns_valid_then_counted_valid(self, coordinator, master) -> None:
        summary = coordinator.migrate_existing_recurring_events()

        assert summary.valid == 1
        assert summary.fixed == 0
        assert summary.errors == 0

    def test_migrate_when_weekly_without_days_then_fixed_with_todays_weekday(
        self, coordinator, repository
    ) -> None:
        self._master(
            repository, "w1", {"type": "weekly", "endAfterOccurrences": 5}, on=date(2024, 1, 3)
        )

        summary = coordinator.migrate_existing_recurring_events()

        assert summary.fixed == 1
        # 2024-01-15 is a Monday
        assert repository.find_by_id("w1").recurrence_pattern.days_of_week == [1]

    def test_migrate_when_fix_from_anchor_enabled_then_anchor_weekday(
        self, repository, engine
    ) -> None:
        self._master(
            repository, "w1", {"type": "weekly", "endAfterOccurrences": 5}, on=date(2024, 1, 3)
        )
        coordinator = SeriesCoordinator(
            repository, engine, SimpleNamespace(fix_weekly_from_anchor=True)
        )

        coordinator.migrate_existing_recurring_events()

        # 2024-01-03 is a Wednesday
        assert repository.find_by_id("w1").recurrence_pattern.days_of_week == [3]

    def test_migrate_when_fields_missing_then_defaults_filled(self, coordinator, repository) -> None:
        self._master(repository, "mo", {"type": "monthly", "interval": 0})
        self._master(repository, "yr", {"type": "yearly", "endDate": "2030-01-01"})

        summary = coordinator.migrate_existing_recurring_events()

        monthly = repository.find_by_id("mo").recurrence_pattern
        yearly = repository.find_by_id("yr").recurrence_pattern
        assert summary.fixed == 2
        assert (monthly.interval, monthly.day_of_month, monthly.end_after_occurrences) == (1, 1, 10)
        assert (yearly.month_of_year, yearly.day_of_month) == (1, 1)
        assert yearly.end_after_occurrences is None

    def test_migrate_when_unfixable_then_error_counted_and_pattern_untouched(
        self, coordinator, repository
    ) -> None:
        self._master(repository, "bad", {"type": "monthly", "dayOfMonth": 40, "endAfterOccurrences": 3})

        summary = coordinator.migrate_existing_recurring_events()

        assert summary.errors == 1
        assert repository.find_by_id("bad").recurrence_pattern.day_of_month == 40

    def test_migrate_when_instances_drift_then_realigned_with_master(
        self, coordinator, repository, master
    ) -> None:
        repository.create(_derived("i1", date(2024, 1, 3), title="Old title", time="10:00"))
        repository.create(_derived("i2", date(2024, 1, 5)))
        repository.create(_derived("e1", date(2024, 1, 7), is_exception=True, title="Kept"))

        summary = coordinator.migrate_existing_recurring_events()

        assert summary.instances_repaired == 1
        repaired = repository.find_by_id("i1")
        assert (repaired.title, repaired.time) == ("Standup", "09:00")
        assert repository.find_by_id("e1").title == "Kept"

    def test_ensure_consistency_when_instance_owns_pattern_then_stripped(
        self, coordinator, repository, master
    ) -> None:
        repository.create(_derived("i1", date(2024, 1, 3), recurrence_pattern=EVERY_THIRD_DAY))

        assert coordinator._ensure_pattern_consistency("m1") == 1
        assert repository.find_by_id("i1").recurrence_pattern is None

    def test_cleanup_when_master_missing_then_rows_deleted(self, coordinator, repository) -> None:
        repository.create(_derived("orphan", date(2024, 1, 3), master_id="ghost"))

        assert coordinator._cleanup_orphaned_instances("ghost") == 1
        assert repository.find_by_id("orphan") is None

    def test_migrate_when_listing_fails_then_migration_error(self, spy_repository, engine) -> None:
        spy_repository.find_recurring_events.side_effect = RepositoryError("offline")

        with pytest.raises(MigrationError):
            SeriesCoordinator(spy_repository, engine).migrate_existing_recurring_events()

    def test_migrate_when_one_event_fails_then_pass_continues(
        self, repository, spy_repository, engine, master
    ) -> None:
        self._master(repository, "mo", {"type": "monthly", "endAfterOccurrences": 3})
        spy_repository.update.side_effect = RepositoryError("read-only")

        summary = SeriesCoordinator(spy_repository, engine).migrate_existing_recurring_events()

        assert summary.valid == 1
        assert summary.errors == 1
