"""calendar_series.config_loader

Config loader for calendar_series.

- Reads YAML (PyYAML) files, or JSON files when the suffix is ``.json``.
- Exposes a typed dataclass `SeriesSettings` and a `load_settings()` helper
  that accepts an optional path and environment-derived overrides.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes", "on")


@dataclass
class SeriesSettings:
    """Typed configuration for calendar_series.

    Fields:
        store_path: JSON event store used by the command line tool
        log_level: logging level name
        max_occurrences: generation cap for patterns without an occurrence count
        preview_months: months previewed after a pattern change
        future_window_years: look-ahead for upcoming occurrences and series views
        default_future_limit: upcoming occurrences returned when no limit is given
        fix_weekly_from_anchor: repair empty weekly patterns with the anchor's weekday
            instead of today's
    """

    store_path: str = "calendar_events.json"
    log_level: str = "INFO"
    max_occurrences: int = 1000
    preview_months: int = 6
    future_window_years: int = 2
    default_future_limit: int = 10
    fix_weekly_from_anchor: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> SeriesSettings:
        """Create SeriesSettings from a plain mapping, applying defaults.

        Numeric-like values are coerced to int; values that cannot be coerced,
        or that fall below 1, are replaced by the default with a warning.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int) -> int:
            raw = data.get(key, default)
            try:
                value = int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            if value < 1:
                logger.warning("Config %s=%d below minimum; using default %d", key, value, default)
                return default
            return value

        def _coerce_bool(key: str, default: bool) -> bool:
            raw = data.get(key, default)
            if isinstance(raw, str):
                return raw.strip().lower() in _TRUTHY
            return bool(raw)

        store_path = data.get("store_path") or cls.store_path
        log_level = data.get("log_level") or "INFO"

        return cls(
            store_path=str(store_path),
            log_level=str(log_level).upper(),
            max_occurrences=_coerce_int("max_occurrences", 1000),
            preview_months=_coerce_int("preview_months", 6),
            future_window_years=_coerce_int("future_window_years", 2),
            default_future_limit=_coerce_int("default_future_limit", 10),
            fix_weekly_from_anchor=_coerce_bool("fix_weekly_from_anchor", False),
        )


def _load_yaml_or_json(path: Path) -> Any:
    """Load a YAML or JSON file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Unable to read config file {path}: {exc}") from exc

    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        loaded = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to parse config file {path}: {exc}") from exc

    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_settings(
    path: str | Path | None = None, overrides: Optional[Mapping[str, Any]] = None
) -> SeriesSettings:
    """Load settings from a YAML/JSON file and return a SeriesSettings instance.

    Args:
        path: Optional path to the config file; defaults are used when omitted
            or when the file does not exist
        overrides: Values that take precedence over the file (e.g. from the
            environment, see ``ConfigManager.build_config_from_env``)

    Raises:
        ConfigurationError: If the file exists but is unreadable or its top
            level is not a mapping
    """
    raw: dict[str, Any] = {}
    if path:
        p = Path(path)
        logger.debug("Attempting to load config from %s", p)
        if p.exists():
            loaded = _load_yaml_or_json(p)
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Config file {p} must contain a mapping at top level")
            raw.update(loaded)
            logger.info("Loaded configuration from %s", p)
        else:
            logger.info("Config file %s not found; using defaults", p)

    if overrides:
        raw.update(overrides)

    settings = SeriesSettings.from_dict(raw)
    logger.debug("Configuration values: %s", settings)
    return settings
