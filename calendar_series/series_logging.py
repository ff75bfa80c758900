"""
Central logging configuration for calendar_series.

Keeps the package's own loggers at INFO (or DEBUG when troubleshooting) and
routes pattern-change audit records to a dedicated logger that can be
filtered or shipped separately.
"""

import logging
import os
from typing import Optional

DEBUG_ENV = "CALENDAR_SERIES_DEBUG"
LOG_LEVEL_ENV = "CALENDAR_SERIES_LOG_LEVEL"

AUDIT_LOGGER = "calendar_series.audit"

SERIES_MODULES = [
    "calendar_series",
    "calendar_series.calendar.recurrence_engine",
    "calendar_series.domain.series_coordinator",
    "calendar_series.domain.pattern_migration",
    "calendar_series.domain.repository",
    "calendar_series.domain.json_store",
]


def configure_series_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Configure logging levels for calendar_series.

    Args:
        debug_mode: Whether to enable debug logging for calendar_series modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        CALENDAR_SERIES_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALENDAR_SERIES_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv(DEBUG_ENV, "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv(LOG_LEVEL_ENV, "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    # Keep handlers installed by _init_logging (colored output)
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s - %(name)s - %(message)s")
        )
        root_logger.addHandler(handler)

    series_level = logging.DEBUG if final_debug else logging.INFO
    logger_config: dict[str, int] = {module: series_level for module in SERIES_MODULES}
    # Audit records are always kept
    logger_config[AUDIT_LOGGER] = logging.INFO

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.debug("Debug logging enabled for calendar_series modules")
    else:
        root_logger.debug("Production logging configuration applied")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ["calendar_series", AUDIT_LOGGER]:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
