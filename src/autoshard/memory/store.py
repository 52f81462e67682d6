"""Base JSON storage for autoshard's persisted project state.

All files live in the ``.autoshard/`` directory of the project root.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Generic, TypeVar, cast

logger = logging.getLogger(__name__)

# Default state directory relative to project root
DEFAULT_STATE_DIR = ".autoshard"


def write_json_atomic(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* via a temp file and ``os.replace``.

    Readers never observe a partially written file.

    Raises:
        OSError: If the directory cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


T = TypeVar("T")


class MemoryStore(Generic[T]):
    """Generic JSON-based storage for persisted state.

    Stores and retrieves JSON-serializable data in ``.autoshard/``.
    Owners wrap it with their own serialization logic.
    """

    def __init__(self, project_root: Path, filename: str) -> None:
        """Initialize the store.

        Args:
            project_root: Root directory of the project.
            filename: Name of the JSON file (e.g., "durations.json").
        """
        self._state_dir = project_root / DEFAULT_STATE_DIR
        self._file_path = self._state_dir / filename

    def save(self, data: dict[str, Any]) -> None:
        """Save data to disk as JSON, replacing the file atomically.

        Args:
            data: Dictionary to save.
        """
        write_json_atomic(self._file_path, data)
        logger.debug("Saved %s", self._file_path)

    def load(self) -> dict[str, Any] | None:
        """Load data from disk.

        Returns:
            The loaded data dictionary, or None if the file doesn't exist
            or cannot be parsed.
        """
        if not self._file_path.exists():
            logger.debug("No state file found at %s", self._file_path)
            return None

        try:
            data = json.loads(self._file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to load %s: %s", self._file_path, exc)
            return None

        if not isinstance(data, dict):
            logger.error("Ignoring %s: expected a JSON object", self._file_path)
            return None

        logger.debug("Loaded %s", self._file_path)
        return cast("dict[str, Any]", data)

    @property
    def file_path(self) -> Path:
        """Get the file path for this store."""
        return self._file_path
