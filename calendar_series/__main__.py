"""Command-line entry for calendar_series.

Operational tool for a JSON event store: run the repair migration, change the
pattern of a series (one or many), preview a pattern change and list upcoming
occurrences.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any, NoReturn, Optional

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError

from . import _init_logging
from .calendar.models import PatternUpdate, RecurrencePattern
from .calendar.recurrence_engine import RecurrenceEngine
from .config_loader import SeriesSettings, load_settings
from .core.clock import today
from .core.config_manager import ConfigManager
from .domain.json_store import JsonEventRepository
from .domain.pattern_migration import RecurrencePatternMigration
from .domain.series_coordinator import SeriesCoordinator
from .exceptions import SeriesError
from .series_logging import configure_series_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


class InputError(ValueError):
    """Command line input (JSON payload, file) could not be used."""


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the calendar_series CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="calendar-series",
        description="Recurring calendar series maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  calendar-series migrate                                  # Repair every series in the store
  calendar-series update-pattern evt1 '{"type":"daily","interval":2,"endAfterOccurrences":10}'
  calendar-series bulk-update updates.json                 # [{"eventId": ..., "newPattern": ...}]
  calendar-series preview evt1 '{"type":"weekly","daysOfWeek":[1,3],"endDate":"2025-12-31"}'
  calendar-series next evt1 --limit 5
        """,
    )
    parser.add_argument(
        "--store",
        metavar="PATH",
        help="JSON event store (default: store_path setting, or CALENDAR_SERIES_STORE_PATH)",
    )
    parser.add_argument("--config", metavar="PATH", help="YAML or JSON settings file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    subparsers.add_parser("migrate", help="Validate and repair every recurring series")

    update = subparsers.add_parser("update-pattern", help="Change the pattern of one series")
    update.add_argument("event_id", metavar="EVENT_ID")
    update.add_argument("pattern", metavar="PATTERN_JSON")
    update.add_argument(
        "--effective-date",
        type=_iso_date,
        metavar="YYYY-MM-DD",
        help="First date reconciled against the new pattern (default: today)",
    )

    bulk = subparsers.add_parser("bulk-update", help="Apply pattern updates from a JSON file")
    bulk.add_argument("updates_file", metavar="UPDATES_JSON_FILE", type=Path)

    preview = subparsers.add_parser("preview", help="Preview occurrences under a new pattern")
    preview.add_argument("event_id", metavar="EVENT_ID")
    preview.add_argument("pattern", metavar="PATTERN_JSON")
    preview.add_argument("--from", dest="from_date", type=_iso_date, metavar="YYYY-MM-DD")
    preview.add_argument("--months", type=_positive_int, metavar="N")

    upcoming = subparsers.add_parser("next", help="List upcoming occurrences of a series")
    upcoming.add_argument("event_id", metavar="EVENT_ID")
    upcoming.add_argument("--limit", type=_positive_int, metavar="N")

    return parser


def _parse_pattern(text: str) -> RecurrencePattern:
    try:
        return RecurrencePattern.model_validate_json(text)
    except ValidationError as exc:
        raise InputError(f"invalid pattern JSON: {exc}") from exc


def _load_updates(path: Path) -> list[PatternUpdate]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise InputError(f"cannot read updates file {path}: {exc}") from exc
    if not isinstance(data, list):
        raise InputError(f"updates file {path} must contain a JSON list")
    try:
        return [PatternUpdate.model_validate(item) for item in data]
    except ValidationError as exc:
        raise InputError(f"invalid update in {path}: {exc}") from exc


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _run_command(args: argparse.Namespace, settings: SeriesSettings) -> int:
    repository = JsonEventRepository(args.store or settings.store_path)
    coordinator = SeriesCoordinator(repository, RecurrenceEngine(settings), settings)

    if args.command == "migrate":
        report = RecurrencePatternMigration(repository, coordinator).run()
        _emit(report.model_dump(mode="json"))
        return EXIT_ERROR if report.needs_attention else EXIT_OK

    if args.command == "update-pattern":
        pattern = _parse_pattern(args.pattern)
        master = coordinator.update_recurrence_pattern(args.event_id, pattern, args.effective_date)
        _emit(master.to_record())
        return EXIT_OK

    if args.command == "bulk-update":
        result = coordinator.bulk_update_recurrence_patterns(_load_updates(args.updates_file))
        _emit(result.model_dump(mode="json", by_alias=True))
        return EXIT_OK if result.all_succeeded else EXIT_ERROR

    if args.command == "preview":
        pattern = _parse_pattern(args.pattern)
        master = coordinator.resolve_master(args.event_id)
        from_date = args.from_date or today()
        months = args.months or settings.preview_months
        occurrences = coordinator.engine.generate_future_occurrences_from_date(
            master, pattern, from_date, from_date + relativedelta(months=months)
        )
        for occurrence in occurrences:
            print(occurrence.date.isoformat())
        return EXIT_OK

    if args.command == "next":
        for occurrence in coordinator.get_future_occurrences(args.event_id, args.limit):
            print(occurrence.date.isoformat())
        return EXIT_OK

    raise AssertionError(f"unhandled command {args.command!r}")


def run(argv: Optional[list[str]] = None) -> int:
    """Parse ``argv``, run the command and return the process exit code."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    try:
        overrides = ConfigManager().load_full_config()
        settings = load_settings(args.config, overrides)
        _init_logging(settings.log_level)
        configure_series_logging(debug_mode=args.debug or settings.log_level == "DEBUG")
        return _run_command(args, settings)
    except InputError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    except SeriesError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


def main() -> NoReturn:
    """Run the calendar_series CLI."""
    sys.exit(run())


if __name__ == "__main__":
    main()
