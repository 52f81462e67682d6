"""File-based shard coordination.

Concurrent, mutually unaware processes share a coordination directory that
holds a status table (``shard-status.json``) and one advisory lock file per
claimed shard (``shard-<id>.lock``).  Exclusive lock creation is the only
mutual-exclusion primitive: the status table is informational and its
rewrite race is tolerated because the lock files are authoritative.

Every failure inside the coordinator degrades to an "unsuccessful" result
with a log line; nothing here raises into the coordinating flow.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import socket
import tempfile
import time
from collections import Counter
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from autoshard.coordination.models import (
    AggregateStatus,
    ClaimOutcome,
    LockRecord,
    ShardRecord,
    ShardStatus,
)
from autoshard.memory.store import write_json_atomic
from autoshard.sharding.descriptor import ShardConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────

STATUS_FILE = "shard-status.json"
LOCK_FILE_TEMPLATE = "shard-{}.lock"
LOCK_FILE_GLOB = "shard-*.lock"
COORDINATION_DIR_PREFIX = "autoshard-"

STALE_LOCK_SECONDS = 300.0
"""A lock older than this is abandoned regardless of its owner."""

CORRUPT_LOCK_GRACE_SECONDS = 2.0
"""An unreadable lock younger than this may still be being written."""

_MAX_CLAIM_ATTEMPTS = 2

_LOCK_FILE_RE = re.compile(r"^shard-(\d+)\.lock$")


def coordination_dir_for(project_root: Path) -> Path:
    """Return the default coordination directory for *project_root*.

    The name is derived from the resolved project path so that every process
    working on the same checkout agrees on it.
    """
    digest = hashlib.md5(
        str(project_root.resolve()).encode("utf-8"), usedforsecurity=False
    ).hexdigest()
    return Path(tempfile.gettempdir()) / f"{COORDINATION_DIR_PREFIX}{digest[:8]}"


def process_is_alive(pid: int) -> bool | None:
    """Probe whether *pid* is a running process.

    Returns:
        True or False on POSIX, None where liveness cannot be probed.
    """
    if os.name == "nt":
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return None
    return True


def load_status_table(path: Path) -> dict[int, ShardRecord]:
    """Read a status table keyed by shard id.

    A missing or unreadable table reads as empty.  Malformed entries are
    skipped with a warning.
    """
    try:
        data: Any = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("Could not read shard status %s: %s", path, exc)
        return {}

    if not isinstance(data, dict):
        logger.warning("Ignoring shard status %s: expected a JSON object", path)
        return {}

    statuses: dict[int, ShardRecord] = {}
    for key, value in data.items():
        try:
            shard_id = int(key)
            if not isinstance(value, dict):
                raise ValueError(f"record for {key} is not an object")
            statuses[shard_id] = ShardRecord.from_dict(shard_id, value)
        except ValueError as exc:
            logger.warning("Skipping malformed status entry %r: %s", key, exc)
    return statuses


class _LockState(Enum):
    LIVE = "live"
    ABANDONED = "abandoned"
    CLEARED = "cleared"


class ShardCoordinator:
    """Hands out exclusive shard claims through a shared directory.

    Args:
        directory: Coordination directory shared by all participants.
        total: Number of shard ids (``1..total``).
        stale_after: Lock age in seconds after which it is reclaimed.
        clock: Source of epoch seconds.
        liveness_probe: Returns True/False for a pid, or None when unknown.
        pid: Pid written into lock files and status records.
        hostname: Host name written into lock files.

    Raises:
        ShardConfigurationError: If *total* is not positive.
    """

    def __init__(
        self,
        directory: Path,
        total: int,
        *,
        stale_after: float = STALE_LOCK_SECONDS,
        clock: Callable[[], float] = time.time,
        liveness_probe: Callable[[int], bool | None] = process_is_alive,
        pid: int | None = None,
        hostname: str | None = None,
    ) -> None:
        if total < 1:
            msg = f"total shard count must be >= 1, got {total}"
            raise ShardConfigurationError(msg)
        self._directory = directory
        self._total = total
        self._stale_after = stale_after
        self._clock = clock
        self._liveness_probe = liveness_probe
        self._pid = pid if pid is not None else os.getpid()
        self._hostname = hostname or socket.gethostname()
        self._reported_out_of_range = False

    @property
    def directory(self) -> Path:
        """The coordination directory."""
        return self._directory

    @property
    def total(self) -> int:
        """Number of shard ids."""
        return self._total

    @property
    def status_path(self) -> Path:
        """Location of the status table."""
        return self._directory / STATUS_FILE

    def lock_path(self, shard_id: int) -> Path:
        """Location of the lock file for *shard_id*."""
        return self._directory / LOCK_FILE_TEMPLATE.format(shard_id)

    def ensure_directory(self) -> bool:
        """Create the coordination directory if needed.

        Returns:
            True if the directory exists afterwards.
        """
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Could not create coordination directory %s: %s", self._directory, exc)
            return False
        return True

    # ── Claiming ──────────────────────────────────────────────────

    def claim(self, shard_id: int) -> ClaimOutcome:
        """Try to take exclusive ownership of *shard_id*.

        At most two lock-creation attempts are made: a stale, dead-owner,
        corrupt or vanished lock is cleared once and creation retried once.
        """
        if not 1 <= shard_id <= self._total:
            logger.warning("Refusing to claim shard %d outside 1..%d", shard_id, self._total)
            return ClaimOutcome.UNAVAILABLE
        if not self.ensure_directory():
            return ClaimOutcome.UNAVAILABLE

        for attempt in range(1, _MAX_CLAIM_ATTEMPTS + 1):
            try:
                self._create_lock(shard_id)
            except FileExistsError:
                if attempt == _MAX_CLAIM_ATTEMPTS:
                    break
                if self._inspect_existing_lock(shard_id) is _LockState.LIVE:
                    return ClaimOutcome.CONFLICT
                continue
            except OSError as exc:
                logger.error("Could not create lock for shard %d: %s", shard_id, exc)
                return ClaimOutcome.UNAVAILABLE

            self._mark_running(shard_id)
            logger.debug("Claimed shard %d/%d", shard_id, self._total)
            return ClaimOutcome.GRANTED

        logger.debug("Shard %d was re-locked by another process", shard_id)
        return ClaimOutcome.CONFLICT

    def _create_lock(self, shard_id: int) -> None:
        """Create the lock file exclusively and fill in its record.

        Raises:
            FileExistsError: If another lock file is present.
            OSError: On any other I/O failure.
        """
        path = self.lock_path(shard_id)
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        record = LockRecord(owner_pid=self._pid, created_at=self._clock(), hostname=self._hostname)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record.to_dict(), fh)
        except OSError:
            path.unlink(missing_ok=True)
            raise

    def _assess_lock(self, shard_id: int, path: Path) -> tuple[_LockState, str]:
        """Classify an existing lock file without modifying it.

        Returns:
            The lock's state and a short reason for log lines.
        """
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return _LockState.CLEARED, "vanished"
        except OSError as exc:
            logger.warning("Could not read lock for shard %d: %s", shard_id, exc)
            return _LockState.LIVE, "unreadable"

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("lock file is not a JSON object")
            record = LockRecord.from_dict(data)
        except ValueError:
            return self._assess_corrupt_lock(shard_id, path)

        age = self._clock() - record.created_at
        if age > self._stale_after:
            return _LockState.ABANDONED, f"stale, pid {record.owner_pid}, {age:.0f}s old"

        # Pids of another host cannot be checked from here; only age frees its locks.
        if record.hostname and record.hostname != self._hostname:
            return _LockState.LIVE, f"held by pid {record.owner_pid} on {record.hostname}"

        if self._liveness_probe(record.owner_pid) is False:
            return _LockState.ABANDONED, f"dead process {record.owner_pid}"
        return _LockState.LIVE, f"held by pid {record.owner_pid}"

    def _assess_corrupt_lock(self, shard_id: int, path: Path) -> tuple[_LockState, str]:
        try:
            age = self._clock() - path.stat().st_mtime
        except FileNotFoundError:
            return _LockState.CLEARED, "vanished"
        except OSError as exc:
            logger.warning("Could not stat lock for shard %d: %s", shard_id, exc)
            return _LockState.LIVE, "unreadable"

        if age < CORRUPT_LOCK_GRACE_SECONDS:
            return _LockState.LIVE, "still being written"
        return _LockState.ABANDONED, "corrupted"

    def _inspect_existing_lock(self, shard_id: int) -> _LockState:
        """Decide whether an existing lock is live, clearing it if not."""
        path = self.lock_path(shard_id)
        state, reason = self._assess_lock(shard_id, path)
        if state is not _LockState.ABANDONED:
            return state
        logger.info("Removing lock for shard %d (%s)", shard_id, reason)
        return self._remove_lock(shard_id, path)

    def _remove_lock(self, shard_id: int, path: Path) -> _LockState:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove lock for shard %d: %s", shard_id, exc)
            return _LockState.LIVE
        return _LockState.CLEARED

    def determine_next_available_shard(self, exclude: Iterable[int] = ()) -> int | None:
        """Claim the lowest pending or failed shard id not in *exclude*.

        Running ids are scanned too, which goes beyond a pending-or-failed
        scan so that a crashed owner's shard is picked up again: such a
        claim only succeeds when the previous lock is gone, stale, corrupt
        or held by a dead process on this host.  Completed ids are skipped.

        Returns:
            The granted shard id, or None when nothing could be claimed.
        """
        excluded = set(exclude)
        statuses = self.read_status()
        for shard_id in range(1, self._total + 1):
            if shard_id in excluded:
                continue
            record = statuses.get(shard_id)
            if record is not None and record.status is ShardStatus.COMPLETED:
                continue
            if self.claim(shard_id) is ClaimOutcome.GRANTED:
                return shard_id
        return None

    # ── Status updates ────────────────────────────────────────────

    def _mark_running(self, shard_id: int) -> None:
        def apply(record: ShardRecord) -> None:
            record.status = ShardStatus.RUNNING
            record.owner_pid = self._pid
            record.started_at = self._clock()
            record.ended_at = None
            record.exit_code = None

        self._update_record(shard_id, apply)

    def record_owner(self, shard_id: int, pid: int) -> bool:
        """Record the pid of the process executing *shard_id*."""

        def apply(record: ShardRecord) -> None:
            record.owner_pid = pid

        return self._update_record(shard_id, apply)

    def mark_complete(self, shard_id: int, exit_code: int = 0) -> bool:
        """Record the outcome of *shard_id* and release its lock.

        Exit code 0 marks the shard completed; anything else marks it failed
        and leaves it claimable again.

        Returns:
            True if the status table was updated.
        """
        now = self._clock()

        def apply(record: ShardRecord) -> None:
            record.status = ShardStatus.COMPLETED if exit_code == 0 else ShardStatus.FAILED
            record.ended_at = now
            record.exit_code = exit_code

        updated = self._update_record(shard_id, apply)
        self.release(shard_id)
        return updated

    def release(self, shard_id: int) -> bool:
        """Delete the lock for *shard_id* without touching its status.

        Returns:
            True if no lock remains afterwards.
        """
        try:
            self.lock_path(shard_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not release lock for shard %d: %s", shard_id, exc)
            return False
        return True

    def _update_record(self, shard_id: int, apply: Callable[[ShardRecord], None]) -> bool:
        statuses = self.read_status()
        record = statuses.get(shard_id) or ShardRecord(shard_id=shard_id)
        apply(record)
        statuses[shard_id] = record
        return self._write_status(statuses)

    def _write_status(self, statuses: dict[int, ShardRecord]) -> bool:
        payload = {str(shard_id): rec.to_dict() for shard_id, rec in sorted(statuses.items())}
        try:
            write_json_atomic(self.status_path, payload)
        except OSError as exc:
            logger.error("Could not write shard status %s: %s", self.status_path, exc)
            return False
        return True

    # ── Queries ───────────────────────────────────────────────────

    def read_status(self) -> dict[int, ShardRecord]:
        """Return the persisted status records keyed by shard id."""
        return load_status_table(self.status_path)

    def _records_in_range(self) -> dict[int, ShardRecord]:
        """Status records for ids ``1..total``, missing ones as pending."""
        statuses = self.read_status()
        outside = sorted(shard_id for shard_id in statuses if not 1 <= shard_id <= self._total)
        if outside and not self._reported_out_of_range:
            logger.warning(
                "Ignoring status entries %s outside 1..%d in %s",
                outside,
                self._total,
                self.status_path,
            )
            self._reported_out_of_range = True
        return {
            shard_id: statuses.get(shard_id) or ShardRecord(shard_id=shard_id)
            for shard_id in range(1, self._total + 1)
        }

    def live_lock_ids(self) -> list[int]:
        """Return the ids whose lock is still held by a live owner, ascending.

        Locks are judged by the same rules as a claim, but abandoned ones are
        only reported, not removed.  Ids outside ``1..total`` are included.
        """
        try:
            paths = sorted(self._directory.glob(LOCK_FILE_GLOB))
        except OSError as exc:
            logger.warning("Could not list locks in %s: %s", self._directory, exc)
            return []

        live: list[int] = []
        for path in paths:
            match = _LOCK_FILE_RE.match(path.name)
            if match is None:
                continue
            shard_id = int(match.group(1))
            state, reason = self._assess_lock(shard_id, path)
            if state is _LockState.LIVE:
                logger.debug("Shard %d is locked (%s)", shard_id, reason)
                live.append(shard_id)
        return sorted(live)

    def get_aggregate_status(self) -> AggregateStatus:
        """Count shard ids ``1..total`` per state."""
        counts = Counter(record.status for record in self._records_in_range().values())
        return AggregateStatus(
            pending=counts[ShardStatus.PENDING],
            running=counts[ShardStatus.RUNNING],
            completed=counts[ShardStatus.COMPLETED],
            failed=counts[ShardStatus.FAILED],
        )

    def shard_ids_with_status(self, status: ShardStatus) -> list[int]:
        """Return the ids in ``1..total`` currently in *status*, ascending."""
        return [
            shard_id
            for shard_id, record in self._records_in_range().items()
            if record.status is status
        ]

    # ── Teardown ──────────────────────────────────────────────────

    def cleanup(self) -> bool:
        """Remove the coordination directory with all locks and status.

        Returns:
            True if the directory is gone afterwards.
        """
        try:
            shutil.rmtree(self._directory)
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning("Could not clean up %s: %s", self._directory, exc)
            return False
        logger.debug("Removed coordination directory %s", self._directory)
        return True
