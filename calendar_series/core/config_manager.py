"""Settings overrides from CALENDAR_SERIES_* environment variables and .env files."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ENV_PREFIX = "CALENDAR_SERIES_"

# Environment variable suffix -> (settings key, is integer)
_ENV_KEYS: dict[str, tuple[str, bool]] = {
    "STORE_PATH": ("store_path", False),
    "LOG_LEVEL": ("log_level", False),
    "MAX_OCCURRENCES": ("max_occurrences", True),
    "PREVIEW_MONTHS": ("preview_months", True),
    "FUTURE_WINDOW_YEARS": ("future_window_years", True),
    "DEFAULT_FUTURE_LIMIT": ("default_future_limit", True),
    "FIX_WEEKLY_FROM_ANCHOR": ("fix_weekly_from_anchor", False),
}


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_env_file(path: Path) -> dict[str, str]:
    """Read ``KEY=VALUE`` pairs from a .env file.

    Blank lines, ``#`` comments and lines without ``=`` are skipped. A leading
    ``export`` is allowed, and one pair of matching quotes around the value is
    removed. A missing or unreadable file yields an empty mapping.
    """
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return {}
    except OSError:
        logger.warning("Could not read %s; ignoring it", path)
        return {}

    pairs: dict[str, str] = {}
    for line in (raw.strip() for raw in lines):
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if sep and key:
            pairs[key] = _unquote(value.strip())
    return pairs


class ConfigManager:
    """Collects settings overrides for the command line tool.

    Values come from ``CALENDAR_SERIES_*`` environment variables; a .env file
    (default: ``./.env``) supplies defaults for the ones that are unset.
    """

    def __init__(self, env_file_path: Path | None = None):
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Export unset ``CALENDAR_SERIES_*`` variables from the .env file.

        Keys without the package prefix are ignored, and variables already in
        the environment are never overwritten.

        Returns:
            Names of the variables that were set
        """
        loaded = []
        for key, value in parse_env_file(self.env_file_path).items():
            if not key.startswith(ENV_PREFIX):
                logger.debug("Ignoring %s from %s", key, self.env_file_path)
            elif key not in os.environ:
                os.environ[key] = value
                loaded.append(key)

        if loaded:
            logger.debug("Loaded %s from %s", ", ".join(loaded), self.env_file_path)
        return loaded

    def build_config_from_env(self) -> dict[str, Any]:
        """Map ``CALENDAR_SERIES_*`` variables to settings keys.

        Integer settings that do not parse are dropped with a warning so the
        default applies.

        Returns:
            Mapping suitable for ``load_settings(overrides=...)``
        """
        overrides: dict[str, Any] = {}
        for suffix, (key, is_int) in _ENV_KEYS.items():
            name = ENV_PREFIX + suffix
            raw = os.environ.get(name, "").strip()
            if not raw:
                continue
            if not is_int:
                overrides[key] = raw
                continue
            try:
                overrides[key] = int(raw)
            except ValueError:
                logger.warning("Invalid %s=%r; ignoring", name, raw)
        return overrides

    def load_full_config(self) -> dict[str, Any]:
        """Apply the .env defaults, then read the environment."""
        self.load_env_file()
        return self.build_config_from_env()
