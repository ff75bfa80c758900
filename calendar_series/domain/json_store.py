"""JSON-file-backed event repository with atomic writes."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from calendar_series.calendar.models import CalendarEvent
from calendar_series.exceptions import RepositoryError

from .repository import InMemoryEventRepository

logger = logging.getLogger(__name__)


class JsonEventRepository(InMemoryEventRepository):
    """Event repository persisted to a single JSON file.

    The on-disk format is ``{"events": [record, ...]}`` where each record uses
    the camelCase field names (``recurrencePattern``, ``recurrenceId``, ...).
    The whole file is rewritten after every mutation: written to a temporary
    file in the same directory, then replaced into place.

    Records that fail to parse are kept verbatim and written back unchanged, so
    a bad row never disappears from the store just because it was loaded.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        super().__init__()
        self._path = Path(path)
        self._unparsed: list[Any] = []

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.debug("Could not ensure directory for event store: %s", self._path.parent)

        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Load events from disk, replacing the in-memory state.

        Raises:
            RepositoryError: If the file exists but is not a readable event store
        """
        with self._lock:
            if not self._path.exists():
                logger.debug("Event store file not found; starting empty: %s", self._path)
                self._events = {}
                self._unparsed = []
                return

            try:
                with self._path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, ValueError) as exc:
                raise RepositoryError(f"Failed to read event store {self._path}: {exc}") from exc

            records = data.get("events") if isinstance(data, dict) else None
            if not isinstance(records, list):
                raise RepositoryError(
                    f"Event store {self._path} must be an object with an 'events' list"
                )

            events: dict[str, CalendarEvent] = {}
            unparsed: list[Any] = []
            for index, record in enumerate(records):
                try:
                    event = CalendarEvent.model_validate(record)
                except ValidationError as exc:
                    logger.warning(
                        "Keeping malformed record #%d in %s unparsed: %s",
                        index,
                        self._path,
                        exc.errors()[0].get("msg") if exc.errors() else exc,
                    )
                    unparsed.append(record)
                    continue
                events[event.id] = event

            self._events = events
            self._unparsed = unparsed
            logger.debug(
                "Loaded event store %s (%d events, %d unparsed)",
                self._path,
                len(events),
                len(unparsed),
            )

    def _committed(self) -> None:
        self._persist()

    def _persist(self) -> None:
        """Persist the current in-memory state to disk atomically.

        Raises:
            RepositoryError: If the file could not be written
        """
        records = [event.to_record() for event in self._events.values()]
        data = {"events": records + self._unparsed}

        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", dir=self._path.parent, delete=False, encoding="utf-8", suffix=".tmp"
            ) as tf:
                tmp_path = Path(tf.name)
                json.dump(data, tf, ensure_ascii=False, indent=2)
                tf.flush()
                with contextlib.suppress(OSError):
                    os.fsync(tf.fileno())

            tmp_path.replace(self._path)
        except OSError as exc:
            logger.warning("Failed to persist event store to %s: %s", self._path, exc)
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise RepositoryError(f"Failed to persist event store {self._path}: {exc}") from exc
