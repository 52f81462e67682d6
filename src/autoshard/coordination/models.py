"""Records persisted in the coordination directory."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ShardStatus(Enum):
    """Lifecycle state of one shard id."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ClaimOutcome(Enum):
    """Result of a claim attempt."""

    GRANTED = "granted"
    """The caller now owns the shard."""

    CONFLICT = "conflict"
    """A live owner holds the shard."""

    UNAVAILABLE = "unavailable"
    """The claim could not be attempted (I/O error or id out of range)."""


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


@dataclass
class ShardRecord:
    """Status-table entry for one shard id."""

    shard_id: int
    """1-based shard id."""

    status: ShardStatus = ShardStatus.PENDING
    """Current lifecycle state."""

    owner_pid: int | None = None
    """Process running the shard's tests."""

    started_at: float | None = None
    """Epoch seconds when the shard was last claimed."""

    ended_at: float | None = None
    """Epoch seconds when the shard last finished."""

    exit_code: int | None = None
    """Exit code of the last finished attempt."""

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "shard_id": self.shard_id,
            "status": self.status.value,
            "owner_pid": self.owner_pid,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, shard_id: int, data: dict[str, Any]) -> ShardRecord:
        """Build a record from its JSON form.

        Raises:
            ValueError: If ``status`` is not a known state.
        """
        return cls(
            shard_id=shard_id,
            status=ShardStatus(data.get("status", ShardStatus.PENDING.value)),
            owner_pid=_optional_int(data.get("owner_pid")),
            started_at=_optional_float(data.get("started_at")),
            ended_at=_optional_float(data.get("ended_at")),
            exit_code=_optional_int(data.get("exit_code")),
        )


@dataclass
class LockRecord:
    """Content of a ``shard-<id>.lock`` file."""

    owner_pid: int
    created_at: float
    hostname: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "owner_pid": self.owner_pid,
            "created_at": self.created_at,
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockRecord:
        """Build a lock record from its JSON form.

        Raises:
            ValueError: If a required field is missing or has the wrong type.
        """
        owner_pid = _optional_int(data.get("owner_pid"))
        created_at = _optional_float(data.get("created_at"))
        if owner_pid is None or created_at is None:
            msg = "lock record needs integer owner_pid and numeric created_at"
            raise ValueError(msg)
        return cls(
            owner_pid=owner_pid,
            created_at=created_at,
            hostname=str(data.get("hostname", "")),
        )


@dataclass
class AggregateStatus:
    """Counts of shard ids per state."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def is_settled(self) -> bool:
        """True when nothing is pending or running."""
        return self.pending == 0 and self.running == 0

    def is_converged(self, total: int) -> bool:
        """True when every one of *total* shards has finished."""
        return self.completed + self.failed == total

    def to_dict(self) -> dict[str, int]:
        """Convert to a JSON-serializable dict."""
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
        }
