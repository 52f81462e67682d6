"""Cross-process shard claiming and the shard runner."""

from autoshard.coordination.coordinator import (
    ShardCoordinator,
    coordination_dir_for,
    process_is_alive,
)
from autoshard.coordination.models import (
    AggregateStatus,
    ClaimOutcome,
    LockRecord,
    ShardRecord,
    ShardStatus,
)
from autoshard.coordination.runner import CommandSpawner, RunSummary, ShardExit, ShardRunner

__all__ = [
    "AggregateStatus",
    "ClaimOutcome",
    "CommandSpawner",
    "LockRecord",
    "RunSummary",
    "ShardCoordinator",
    "ShardExit",
    "ShardRecord",
    "ShardRunner",
    "ShardStatus",
    "coordination_dir_for",
    "process_is_alive",
]
