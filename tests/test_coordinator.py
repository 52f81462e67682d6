"""Tests for autoshard.coordination.coordinator."""

from __future__ import annotations

import json
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar
from unittest.mock import patch

import pytest

from autoshard.coordination.coordinator import (
    STALE_LOCK_SECONDS,
    ShardCoordinator,
    coordination_dir_for,
    load_status_table,
    process_is_alive,
)
from autoshard.coordination.models import (
    AggregateStatus,
    ClaimOutcome,
    LockRecord,
    ShardRecord,
    ShardStatus,
)
from autoshard.sharding.descriptor import ShardConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _coordinator(
    directory: Path,
    total: int = 3,
    *,
    clock: FakeClock | None = None,
    alive: bool | None = True,
    pid: int = 4242,
    hostname: str = "test-host",
) -> ShardCoordinator:
    return ShardCoordinator(
        directory,
        total,
        clock=clock or FakeClock(),
        liveness_probe=lambda _pid: alive,
        pid=pid,
        hostname=hostname,
    )


def _write_lock(path: Path, owner_pid: int, created_at: float) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"owner_pid": owner_pid, "created_at": created_at}))


# ── Construction & paths ─────────────────────────────────────────────


class TestConstruction:
    @pytest.mark.parametrize("total", [0, -1])
    def test_rejects_non_positive_total(self, tmp_path: Path, total: int) -> None:
        with pytest.raises(ShardConfigurationError):
            ShardCoordinator(tmp_path, total)

    def test_paths(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        assert coordinator.status_path == tmp_path / "shard-status.json"
        assert coordinator.lock_path(2) == tmp_path / "shard-2.lock"

    def test_coordination_dir_is_stable_per_project(self, tmp_path: Path) -> None:
        (tmp_path / "sub").mkdir()
        first = coordination_dir_for(tmp_path)
        second = coordination_dir_for(tmp_path / "sub" / "..")
        other = coordination_dir_for(tmp_path / "other")
        assert first == second
        assert first != other
        assert first.name.startswith("autoshard-")
        assert len(first.name) == len("autoshard-") + 8


# ── Claiming ─────────────────────────────────────────────────────────


class TestClaim:
    def test_first_claim_granted(self, tmp_path: Path, clock: FakeClock) -> None:
        coordinator = _coordinator(tmp_path, clock=clock)

        assert coordinator.claim(1) is ClaimOutcome.GRANTED

        lock = LockRecord.from_dict(json.loads(coordinator.lock_path(1).read_text()))
        assert lock == LockRecord(owner_pid=4242, created_at=clock.now, hostname="test-host")
        record = coordinator.read_status()[1]
        assert record.status is ShardStatus.RUNNING
        assert record.owner_pid == 4242
        assert record.started_at == clock.now

    def test_second_claim_conflicts_while_owner_alive(self, tmp_path: Path) -> None:
        first = _coordinator(tmp_path, pid=1)
        second = _coordinator(tmp_path, pid=2, alive=True)

        assert first.claim(1) is ClaimOutcome.GRANTED
        assert second.claim(1) is ClaimOutcome.CONFLICT
        assert json.loads(first.lock_path(1).read_text())["owner_pid"] == 1

    def test_dead_owner_reclaimed(self, tmp_path: Path) -> None:
        _coordinator(tmp_path, pid=1).claim(2)
        thief = _coordinator(tmp_path, pid=2, alive=False)

        assert thief.claim(2) is ClaimOutcome.GRANTED
        assert json.loads(thief.lock_path(2).read_text())["owner_pid"] == 2

    def test_stale_lock_reclaimed_even_if_owner_alive(self, tmp_path: Path) -> None:
        clock = FakeClock()
        _coordinator(tmp_path, pid=1, clock=clock).claim(1)

        clock.now += STALE_LOCK_SECONDS + 1
        later = _coordinator(tmp_path, pid=2, clock=clock, alive=True)
        assert later.claim(1) is ClaimOutcome.GRANTED

    def test_lock_just_below_threshold_is_live(self, tmp_path: Path) -> None:
        clock = FakeClock()
        _coordinator(tmp_path, pid=1, clock=clock).claim(1)

        clock.now += STALE_LOCK_SECONDS - 1
        assert _coordinator(tmp_path, pid=2, clock=clock).claim(1) is ClaimOutcome.CONFLICT

    def test_no_liveness_probe_treats_fresh_lock_as_live(self, tmp_path: Path) -> None:
        _coordinator(tmp_path, pid=1).claim(1)
        assert _coordinator(tmp_path, pid=2, alive=None).claim(1) is ClaimOutcome.CONFLICT

    def test_fresh_lock_of_other_host_is_live(self, tmp_path: Path) -> None:
        clock = FakeClock()
        _coordinator(tmp_path, pid=4_000_000, clock=clock, hostname="ci-runner-a").claim(1)
        other = _coordinator(tmp_path, pid=2, clock=clock, alive=False, hostname="ci-runner-b")

        assert other.claim(1) is ClaimOutcome.CONFLICT
        assert json.loads(other.lock_path(1).read_text())["hostname"] == "ci-runner-a"

    def test_other_host_pid_not_checked_locally(self, tmp_path: Path) -> None:
        ShardCoordinator(tmp_path, 2, pid=4_000_000, hostname="ci-runner-a").claim(1)
        # A pid this large does not exist locally.
        other = ShardCoordinator(tmp_path, 2, hostname="ci-runner-b")
        assert other.claim(1) is ClaimOutcome.CONFLICT

    def test_stale_lock_of_other_host_reclaimed(self, tmp_path: Path) -> None:
        clock = FakeClock()
        _coordinator(tmp_path, pid=1, clock=clock, hostname="ci-runner-a").claim(1)

        clock.now += STALE_LOCK_SECONDS + 1
        other = _coordinator(tmp_path, pid=2, clock=clock, hostname="ci-runner-b")
        assert other.claim(1) is ClaimOutcome.GRANTED

    def test_out_of_range_id_unavailable(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, total=3)
        assert coordinator.claim(0) is ClaimOutcome.UNAVAILABLE
        assert coordinator.claim(4) is ClaimOutcome.UNAVAILABLE

    def test_fresh_corrupt_lock_is_live(self, tmp_path: Path) -> None:
        coordinator = ShardCoordinator(tmp_path, 2, clock=time.time, liveness_probe=lambda _: False)
        coordinator.lock_path(1).write_text("")
        assert coordinator.claim(1) is ClaimOutcome.CONFLICT

    def test_old_corrupt_lock_reclaimed(self, tmp_path: Path) -> None:
        coordinator = ShardCoordinator(
            tmp_path, 2, clock=lambda: time.time() + 10, liveness_probe=lambda _: True
        )
        coordinator.lock_path(1).write_text("{half-written")
        assert coordinator.claim(1) is ClaimOutcome.GRANTED

    def test_lock_with_missing_fields_is_corrupt(self, tmp_path: Path) -> None:
        coordinator = ShardCoordinator(
            tmp_path, 2, clock=lambda: time.time() + 10, liveness_probe=lambda _: True
        )
        coordinator.lock_path(1).write_text(json.dumps({"hostname": "x"}))
        assert coordinator.claim(1) is ClaimOutcome.GRANTED

    def test_retries_only_once(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, alive=False)
        _write_lock(coordinator.lock_path(1), owner_pid=99, created_at=FakeClock().now)

        with patch.object(
            ShardCoordinator, "_create_lock", side_effect=FileExistsError
        ) as create:
            assert coordinator.claim(1) is ClaimOutcome.CONFLICT
        assert create.call_count == 2

    def test_vanished_lock_retried(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        original = ShardCoordinator._create_lock
        calls = []

        def create_once_taken(self: ShardCoordinator, shard_id: int) -> None:
            calls.append(shard_id)
            if len(calls) == 1:
                raise FileExistsError
            original(self, shard_id)

        with patch.object(ShardCoordinator, "_create_lock", create_once_taken):
            assert coordinator.claim(1) is ClaimOutcome.GRANTED
        assert calls == [1, 1]

    def test_os_error_unavailable(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        with patch.object(ShardCoordinator, "_create_lock", side_effect=PermissionError("ro")):
            assert coordinator.claim(1) is ClaimOutcome.UNAVAILABLE

    def test_directory_creation_failure_unavailable(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        coordinator = _coordinator(blocker / "coordination")
        assert coordinator.claim(1) is ClaimOutcome.UNAVAILABLE


# ── Scanning ─────────────────────────────────────────────────────────


class TestDetermineNextAvailableShard:
    def test_ascending_order(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, total=3)
        assert coordinator.determine_next_available_shard() == 1
        assert coordinator.determine_next_available_shard() == 2
        assert coordinator.determine_next_available_shard() == 3
        assert coordinator.determine_next_available_shard() is None

    def test_exclusion(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, total=3)
        assert coordinator.determine_next_available_shard(exclude=[1, 2]) == 3

    def test_failed_shard_reclaimable_completed_is_final(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, total=2)
        assert coordinator.determine_next_available_shard() == 1
        assert coordinator.determine_next_available_shard() == 2
        coordinator.mark_complete(1, exit_code=0)
        coordinator.mark_complete(2, exit_code=1)

        assert coordinator.determine_next_available_shard() == 2
        assert coordinator.determine_next_available_shard() is None

    def test_orphaned_running_shard_reclaimed(self, tmp_path: Path) -> None:
        crashed = _coordinator(tmp_path, total=1, pid=1)
        assert crashed.claim(1) is ClaimOutcome.GRANTED
        crashed.release(1)

        survivor = _coordinator(tmp_path, total=1, pid=2)
        assert survivor.determine_next_available_shard() == 1
        assert survivor.read_status()[1].owner_pid == 2

    def test_running_shard_with_live_lock_skipped(self, tmp_path: Path) -> None:
        _coordinator(tmp_path, total=2, pid=1).claim(1)
        assert _coordinator(tmp_path, total=2, pid=2).determine_next_available_shard() == 2

    def test_sequential_scans_hand_out_distinct_shards(self, tmp_path: Path) -> None:
        participants = [_coordinator(tmp_path, total=4, pid=pid) for pid in range(1, 7)]
        granted = [c.determine_next_available_shard() for c in participants]
        assert sorted(g for g in granted if g is not None) == [1, 2, 3, 4]
        assert granted.count(None) == 2


R = TypeVar("R")


def _race(
    participants: list[ShardCoordinator], action: Callable[[ShardCoordinator], R]
) -> list[R]:
    """Run *action* on every participant at once, released by a barrier."""
    barrier = threading.Barrier(len(participants))

    def attempt(coordinator: ShardCoordinator) -> R:
        barrier.wait()
        return action(coordinator)

    with ThreadPoolExecutor(max_workers=len(participants)) as pool:
        return list(pool.map(attempt, participants))


class TestConcurrentClaims:
    WORKERS = 8

    def test_exactly_one_claim_granted(self, tmp_path: Path) -> None:
        participants = [_coordinator(tmp_path, pid=pid) for pid in range(1, self.WORKERS + 1)]

        outcomes = _race(participants, lambda coordinator: coordinator.claim(1))

        assert outcomes.count(ClaimOutcome.GRANTED) == 1
        assert outcomes.count(ClaimOutcome.CONFLICT) == self.WORKERS - 1
        owner = json.loads(participants[0].lock_path(1).read_text())["owner_pid"]
        assert outcomes[owner - 1] is ClaimOutcome.GRANTED

    def test_concurrent_scans_never_share_a_shard(self, tmp_path: Path) -> None:
        participants = [_coordinator(tmp_path, total=4, pid=pid) for pid in range(1, 7)]

        granted = _race(participants, ShardCoordinator.determine_next_available_shard)

        assert sorted(g for g in granted if g is not None) == [1, 2, 3, 4]
        assert granted.count(None) == 2


# ── Status updates ───────────────────────────────────────────────────


class TestStatusUpdates:
    def test_mark_complete_success(self, tmp_path: Path, clock: FakeClock) -> None:
        coordinator = _coordinator(tmp_path, clock=clock)
        coordinator.claim(1)
        clock.now += 12.5

        assert coordinator.mark_complete(1, exit_code=0)

        record = coordinator.read_status()[1]
        assert record.status is ShardStatus.COMPLETED
        assert record.exit_code == 0
        assert record.ended_at == clock.now
        assert not coordinator.lock_path(1).exists()

    def test_mark_complete_failure(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        coordinator.claim(1)
        coordinator.mark_complete(1, exit_code=2)
        record = coordinator.read_status()[1]
        assert record.status is ShardStatus.FAILED
        assert record.exit_code == 2

    def test_reclaim_after_failure_resets_outcome(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        coordinator.claim(1)
        coordinator.mark_complete(1, exit_code=1)
        coordinator.claim(1)
        record = coordinator.read_status()[1]
        assert record.status is ShardStatus.RUNNING
        assert record.exit_code is None
        assert record.ended_at is None

    def test_record_owner(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        coordinator.claim(1)
        assert coordinator.record_owner(1, 31337)
        assert coordinator.read_status()[1].owner_pid == 31337

    def test_release_keeps_status(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        coordinator.claim(1)
        assert coordinator.release(1)
        assert not coordinator.lock_path(1).exists()
        assert coordinator.read_status()[1].status is ShardStatus.RUNNING
        assert coordinator.release(1)

    def test_status_write_failure_reported(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        coordinator.claim(1)
        with patch(
            "autoshard.coordination.coordinator.write_json_atomic", side_effect=OSError("ro")
        ):
            assert not coordinator.mark_complete(1, exit_code=0)
        assert not coordinator.lock_path(1).exists()


# ── Queries ──────────────────────────────────────────────────────────


class TestQueries:
    def test_aggregate_counts_missing_ids_as_pending(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, total=4)
        coordinator.claim(1)
        coordinator.claim(2)
        coordinator.mark_complete(2, exit_code=0)
        coordinator.claim(3)
        coordinator.mark_complete(3, exit_code=1)

        aggregate = coordinator.get_aggregate_status()

        assert aggregate == AggregateStatus(pending=1, running=1, completed=1, failed=1)
        assert not aggregate.is_settled
        assert not aggregate.is_converged(4)

    def test_shard_ids_with_status(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path, total=3)
        coordinator.claim(2)
        assert coordinator.shard_ids_with_status(ShardStatus.PENDING) == [1, 3]
        assert coordinator.shard_ids_with_status(ShardStatus.RUNNING) == [2]

    def test_out_of_range_entries_ignored(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        larger = _coordinator(tmp_path, total=5)
        for shard_id in (4, 5):
            larger.claim(shard_id)
            larger.mark_complete(shard_id)

        smaller = _coordinator(tmp_path, total=3)
        with caplog.at_level("WARNING"):
            assert smaller.get_aggregate_status() == AggregateStatus(pending=3)
            smaller.get_aggregate_status()
        assert sum("outside 1..3" in r.message for r in caplog.records) == 1
        assert smaller.determine_next_available_shard() == 1

    def test_read_status_missing_file(self, tmp_path: Path) -> None:
        assert _coordinator(tmp_path).read_status() == {}

    def test_live_lock_ids(self, tmp_path: Path, clock: FakeClock) -> None:
        coordinator = ShardCoordinator(
            tmp_path, 3, clock=clock, liveness_probe=lambda pid: pid != 99, pid=4242
        )
        coordinator.claim(1)
        _write_lock(coordinator.lock_path(2), owner_pid=99, created_at=clock.now)
        _write_lock(coordinator.lock_path(3), owner_pid=7, created_at=clock.now - 1000)
        _write_lock(tmp_path / "shard-7.lock", owner_pid=7, created_at=clock.now)
        (tmp_path / "shard-x.lock").write_text("{}")

        assert coordinator.live_lock_ids() == [1, 7]
        assert coordinator.lock_path(2).is_file()
        assert coordinator.lock_path(3).is_file()

    def test_live_lock_ids_missing_directory(self, tmp_path: Path) -> None:
        assert _coordinator(tmp_path / "absent").live_lock_ids() == []


class TestLoadStatusTable:
    def test_corrupt_table_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "shard-status.json"
        path.write_text("{{")
        assert load_status_table(path) == {}

    def test_non_object_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "shard-status.json"
        path.write_text("[]")
        assert load_status_table(path) == {}

    def test_malformed_entries_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "shard-status.json"
        path.write_text(
            json.dumps(
                {
                    "1": {"status": "completed", "exit_code": 0},
                    "two": {"status": "pending"},
                    "3": {"status": "exploded"},
                    "4": "running",
                }
            )
        )
        assert load_status_table(path) == {
            1: ShardRecord(shard_id=1, status=ShardStatus.COMPLETED, exit_code=0)
        }


# ── Teardown ─────────────────────────────────────────────────────────


class TestCleanup:
    def test_cleanup_removes_directory(self, tmp_path: Path) -> None:
        directory = tmp_path / "coordination"
        coordinator = _coordinator(directory)
        coordinator.claim(1)
        assert coordinator.cleanup()
        assert not directory.exists()

    def test_cleanup_missing_directory(self, tmp_path: Path) -> None:
        assert _coordinator(tmp_path / "never-created").cleanup()

    def test_cleanup_failure(self, tmp_path: Path) -> None:
        coordinator = _coordinator(tmp_path)
        with patch("autoshard.coordination.coordinator.shutil.rmtree", side_effect=OSError):
            assert not coordinator.cleanup()


@pytest.mark.skipif(os.name == "nt", reason="POSIX process check")
class TestProcessIsAlive:
    def test_own_process_alive(self) -> None:
        assert process_is_alive(os.getpid()) is True

    def test_missing_process(self) -> None:
        with patch("autoshard.coordination.coordinator.os.kill", side_effect=ProcessLookupError):
            assert process_is_alive(123456) is False

    def test_foreign_process(self) -> None:
        with patch("autoshard.coordination.coordinator.os.kill", side_effect=PermissionError):
            assert process_is_alive(1) is True
