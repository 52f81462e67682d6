"""Persisted project state for autoshard."""

from autoshard.memory.duration_history import DurationHistory
from autoshard.memory.store import MemoryStore, write_json_atomic

__all__ = [
    "DurationHistory",
    "MemoryStore",
    "write_json_atomic",
]
