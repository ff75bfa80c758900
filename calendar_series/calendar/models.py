"""Data models for recurring calendar series."""

from __future__ import annotations

import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DELETED_TITLE = "[DELETED]"


class EventType(str, Enum):
    """Calendar event categories."""

    MEETING = "meeting"
    EXAM = "exam"
    HOLIDAY = "holiday"
    TASK = "task"
    REMINDER = "reminder"


class RecurrenceType(str, Enum):
    """Recurrence frequencies."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EventRole(str, Enum):
    """Role of an event within a recurring series."""

    PLAIN = "plain"
    MASTER = "master"
    INSTANCE = "instance"
    EXCEPTION = "exception"
    INVALID = "invalid"


class _SeriesModel(BaseModel):
    """Shared config: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class RecurrencePattern(_SeriesModel):
    """Recurrence rule owned by a master event.

    Only field types are enforced here. Semantic rules (interval >= 1, weekly
    needs days, an end condition...) are checked by
    ``RecurrenceEngine.validate_pattern`` so that broken stored patterns can
    still be loaded and repaired.
    """

    type: RecurrenceType = Field(..., description="Recurrence frequency")
    interval: int = Field(default=1, description="Step size in units of the frequency")
    days_of_week: Optional[list[int]] = Field(
        default=None, description="Weekdays for weekly rules, 0=Sunday..6=Saturday"
    )
    day_of_month: Optional[int] = Field(default=None, description="Day of month (1-31)")
    month_of_year: Optional[int] = Field(default=None, description="Month of year (1-12)")
    end_date: Optional[datetime.date] = Field(default=None, description="Last allowed occurrence date")
    end_after_occurrences: Optional[int] = Field(
        default=None, description="Total number of occurrences, anchor included"
    )

    @property
    def weekday_set(self) -> frozenset[int]:
        """Days of week as an order-independent set."""
        return frozenset(self.days_of_week or ())

    @property
    def has_end_condition(self) -> bool:
        return self.end_date is not None or bool(self.end_after_occurrences)


class DerivedEventId(BaseModel):
    """Identity of an ephemeral occurrence: master id plus occurrence date.

    ``str()`` renders the legacy synthetic id ``"{master_id}_{YYYY-MM-DD}"``;
    equality and hashing use the structured value, never the string.
    """

    model_config = ConfigDict(frozen=True)

    master_id: str
    occurrence_date: datetime.date

    def __str__(self) -> str:
        return f"{self.master_id}_{self.occurrence_date.isoformat()}"

    @classmethod
    def parse(cls, text: str) -> DerivedEventId:
        """Parse a legacy synthetic id back into its parts.

        Raises:
            ValueError: If ``text`` does not end in ``_YYYY-MM-DD``
        """
        master_id, sep, date_part = text.rpartition("_")
        if not sep or not master_id:
            raise ValueError(f"Not a derived event id: {text!r}")
        return cls(master_id=master_id, occurrence_date=datetime.date.fromisoformat(date_part))


class CalendarEvent(_SeriesModel):
    """Calendar event: plain, recurring master, instance or exception."""

    id: str = Field(..., description="Event ID")
    title: str = Field(..., description="Event title")
    description: Optional[str] = Field(default=None, description="Event description")
    date: datetime.date = Field(..., description="Calendar date (no time zone)")
    time: Optional[str] = Field(default=None, description="Free-text display time range")
    type: EventType = Field(default=EventType.MEETING, description="Event category")

    # Series roles
    recurrence_pattern: Optional[RecurrencePattern] = Field(
        default=None, description="Recurrence rule (master events only)"
    )
    recurrence_id: Optional[str] = Field(
        default=None, description="Master event id (instances and exceptions only)"
    )
    is_exception: bool = Field(default=False, description="Overrides one occurrence")

    # Set only on generated, unpersisted occurrences
    occurrence_key: Optional[DerivedEventId] = Field(
        default=None, exclude=True, description="Derived identity of a generated occurrence"
    )

    @property
    def role(self) -> EventRole:
        """Series role according to the role invariant."""
        has_pattern = self.recurrence_pattern is not None
        has_master = bool(self.recurrence_id)
        if has_pattern and has_master:
            return EventRole.INVALID
        if has_pattern:
            return EventRole.INVALID if self.is_exception else EventRole.MASTER
        if has_master:
            return EventRole.EXCEPTION if self.is_exception else EventRole.INSTANCE
        return EventRole.INVALID if self.is_exception else EventRole.PLAIN

    @property
    def is_master(self) -> bool:
        return self.role is EventRole.MASTER

    @property
    def is_derived(self) -> bool:
        return self.role in (EventRole.INSTANCE, EventRole.EXCEPTION)

    @property
    def is_deleted_marker(self) -> bool:
        """True for exceptions that mark an occurrence as deleted."""
        return self.is_exception and self.title == DELETED_TITLE

    def to_record(self) -> dict[str, Any]:
        """Serialize to a camelCase JSON-compatible mapping."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PatternValidationResult(BaseModel):
    """Outcome of ``validate_pattern``."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


class PatternComparison(BaseModel):
    """Field-by-field comparison of two patterns."""

    equal: bool
    differences: list[str] = Field(default_factory=list)


class PatternUpdate(_SeriesModel):
    """One entry of a bulk pattern update."""

    event_id: str
    new_pattern: RecurrencePattern
    effective_date: Optional[datetime.date] = None


class BulkUpdateFailure(_SeriesModel):
    """A bulk update entry that could not be applied."""

    event_id: str
    error: str


class BulkUpdateResult(_SeriesModel):
    """Per-update outcome of ``bulk_update_recurrence_patterns``."""

    successful: list[str] = Field(default_factory=list)
    failed: list[BulkUpdateFailure] = Field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class MigrationSummary(BaseModel):
    """Counters accumulated by the repair pass."""

    valid: int = 0
    fixed: int = 0
    errors: int = 0
    orphans_removed: int = 0
    instances_repaired: int = 0


class MigrationReport(BaseModel):
    """Store-wide report produced after a migration run."""

    total_masters: int = 0
    total_derived: int = 0
    total_exceptions: int = 0
    pattern_distribution: dict[str, int] = Field(default_factory=dict)
    valid_patterns: int = 0
    invalid_patterns: int = 0
    roles_repaired: int = 0
    summary: MigrationSummary = Field(default_factory=MigrationSummary)

    @property
    def needs_attention(self) -> bool:
        return self.invalid_patterns > 0 or self.summary.errors > 0
