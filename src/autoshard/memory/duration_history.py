"""Persisted per-test duration history.

Maps a test identifier to the duration (milliseconds) of its most recent
execution.  The history is an advisory cost hint for shard balancing:
concurrent writers may overwrite each other (last writer wins) and a
damaged file simply falls back to default costs.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from autoshard.memory.store import MemoryStore

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_FILE = "durations.json"


class DurationHistory:
    """Explicitly owned duration store with a ``load``/``save`` lifecycle."""

    def __init__(self, project_root: Path, filename: str = DEFAULT_HISTORY_FILE) -> None:
        """Initialize an empty history bound to ``.autoshard/<filename>``.

        Args:
            project_root: Root directory of the project.
            filename: History file name inside the state directory.
        """
        self._store: MemoryStore[dict[str, Any]] = MemoryStore(project_root, filename)
        self._durations: dict[str, float] = {}

    def load(self) -> None:
        """Replace the in-memory history with the persisted one.

        A missing, unreadable or corrupted file leaves the history empty.
        Entries that are not finite, non-negative numbers are dropped.
        """
        data = self._store.load()
        self._durations = {}
        if data is None:
            return

        skipped = 0
        for test_id, value in data.items():
            if (
                isinstance(value, bool)
                or not isinstance(value, int | float)
                or not math.isfinite(value)
                or value < 0
            ):
                skipped += 1
                continue
            self._durations[test_id] = float(value)

        if skipped:
            logger.warning(
                "Ignored %d invalid duration entries in %s", skipped, self._store.file_path
            )
        logger.debug("Loaded %d test durations", len(self._durations))

    def save(self) -> bool:
        """Persist the history.

        Returns:
            True on success, False if the file could not be written.
        """
        try:
            self._store.save(dict(self._durations))
        except OSError as exc:
            logger.warning("Could not save duration history to %s: %s", self.file_path, exc)
            return False
        return True

    def get(self, test_id: str, default: float) -> float:
        """Return the recorded duration for *test_id*, or *default*."""
        return self._durations.get(test_id, default)

    def record(self, test_id: str, duration_ms: float) -> None:
        """Set the duration of *test_id* and write the history through.

        Non-finite durations are ignored.
        """
        if self._store_duration(test_id, duration_ms):
            self.save()

    def record_many(self, durations: Mapping[str, float]) -> bool:
        """Set several durations and write the history once.

        Returns:
            True if the history was saved.
        """
        for test_id, duration_ms in durations.items():
            self._store_duration(test_id, duration_ms)
        return self.save()

    def _store_duration(self, test_id: str, duration_ms: float) -> bool:
        value = float(duration_ms)
        if not math.isfinite(value):
            logger.warning("Ignoring non-finite duration for %s", test_id)
            return False
        self._durations[test_id] = max(0.0, value)
        return True

    def as_dict(self) -> dict[str, float]:
        """Return a copy of the recorded durations."""
        return dict(self._durations)

    @property
    def file_path(self) -> Path:
        """Location of the history file."""
        return self._store.file_path

    def __len__(self) -> int:
        return len(self._durations)

    def __contains__(self, test_id: object) -> bool:
        return test_id in self._durations
