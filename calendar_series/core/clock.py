"""Calendar-date clock for calendar_series."""

from __future__ import annotations

import datetime
import logging
import os

logger = logging.getLogger(__name__)

TEST_DATE_ENV = "CALENDAR_SERIES_TEST_DATE"


def today() -> datetime.date:
    """Return today's calendar date.

    Can be overridden for testing via the CALENDAR_SERIES_TEST_DATE environment
    variable. Accepts an ISO 8601 date or datetime (e.g. "2024-01-15" or
    "2024-01-15T09:30:00"); only the date part is used.

    Returns:
        Current calendar date (no time zone)
    """
    test_date = os.environ.get(TEST_DATE_ENV)
    if test_date:
        try:
            from dateutil import parser as date_parser

            return date_parser.isoparse(test_date).date()
        except (ValueError, OverflowError) as e:
            logger.warning("Invalid %s=%r, using system date: %s", TEST_DATE_ENV, test_date, e)

    return datetime.date.today()
