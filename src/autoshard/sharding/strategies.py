"""Test-to-shard assignment strategies.

Every strategy is a pure partition function: for a fixed test list and a
fixed shard count, calling ``distribute`` for each index ``1..total`` yields
pairwise-disjoint subsets whose union is the input list.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from autoshard.sharding.descriptor import ShardConfigurationError, ShardDescriptor

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from autoshard.memory.duration_history import DurationHistory

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────

DEFAULT_DURATION_MS = 1000.0
"""Cost assumed for tests that have never been timed."""

_HASH_PREFIX_CHARS = 8

# ── Greedy LPT bin-packing ────────────────────────────────────────


@dataclass
class ShardBucket:
    """Tests accumulated for one shard together with their summed cost."""

    tests: list[str] = field(default_factory=list)
    total_cost: float = 0.0


def balance_by_cost(
    tests: Sequence[str],
    total: int,
    cost_of: Callable[[str], float],
) -> list[ShardBucket]:
    """Distribute *tests* across *total* buckets with the LPT heuristic.

    Tests are sorted by descending cost (stable, so equal costs keep their
    input order) and each one goes to the bucket with the smallest running
    cost, ties going to the lowest bucket index.  For two buckets the final
    cost gap never exceeds the single largest cost.
    """
    weighted = sorted(((test, cost_of(test)) for test in tests), key=lambda p: p[1], reverse=True)
    buckets = [ShardBucket() for _ in range(total)]
    for test, cost in weighted:
        target = min(buckets, key=lambda bucket: bucket.total_cost)
        target.tests.append(test)
        target.total_cost += cost
    return buckets


# ── Strategies ────────────────────────────────────────────────────


class ShardingStrategy(ABC):
    """Maps a full test list and a shard descriptor to that shard's subset."""

    name: ClassVar[str]

    def distribute(self, tests: Sequence[str], descriptor: ShardDescriptor) -> list[str]:
        """Return the tests assigned to *descriptor*.

        An empty test list or an index outside ``1..total`` yields ``[]``.
        """
        if not tests or not descriptor.is_valid_index:
            return []
        return self._select(tests, descriptor)

    @abstractmethod
    def _select(self, tests: Sequence[str], descriptor: ShardDescriptor) -> list[str]:
        """Select the subset for a valid descriptor and non-empty list."""


class RoundRobinStrategy(ShardingStrategy):
    """Position ``p`` goes to shard ``(p mod total) + 1``."""

    name = "round-robin"

    def _select(self, tests: Sequence[str], descriptor: ShardDescriptor) -> list[str]:
        return [t for i, t in enumerate(tests) if i % descriptor.total == descriptor.position]


def stable_hash(test_id: str) -> int:
    """Content-derived hash of a test identifier, identical on every machine."""
    digest = hashlib.md5(test_id.encode("utf-8"), usedforsecurity=False).hexdigest()
    return int(digest[:_HASH_PREFIX_CHARS], 16)


class HashBasedStrategy(ShardingStrategy):
    """A test always lands on the same shard for a given shard count."""

    name = "hash"

    def _select(self, tests: Sequence[str], descriptor: ShardDescriptor) -> list[str]:
        return [t for t in tests if stable_hash(t) % descriptor.total == descriptor.position]


def file_size(path: Path) -> int:
    """Size of *path* in bytes, or 0 when it is missing or unreadable."""
    try:
        return path.stat().st_size
    except OSError:
        return 0


class FileSizeStrategy(ShardingStrategy):
    """Balance shards by test file size.

    Args:
        root: Directory that relative test identifiers are resolved against.
        size_of: Optional cost lookup overriding the file-size probe.
    """

    name = "size"

    def __init__(
        self,
        root: Path | None = None,
        size_of: Callable[[str], float] | None = None,
    ) -> None:
        self._root = root
        self._size_of = size_of

    def cost_of(self, test: str) -> float:
        """Return the cost used to place *test*."""
        if self._size_of is not None:
            try:
                return float(self._size_of(test))
            except OSError:
                return 0.0
        path = Path(test)
        if self._root is not None and not path.is_absolute():
            path = self._root / path
        return float(file_size(path))

    def _select(self, tests: Sequence[str], descriptor: ShardDescriptor) -> list[str]:
        buckets = balance_by_cost(tests, descriptor.total, self.cost_of)
        return buckets[descriptor.position].tests


class HistoryWeightedStrategy(ShardingStrategy):
    """Balance shards by the last observed duration of each test.

    Tests missing from the history cost ``default_duration_ms``.
    """

    name = "smart"

    def __init__(
        self,
        history: DurationHistory,
        default_duration_ms: float = DEFAULT_DURATION_MS,
    ) -> None:
        self._history = history
        self._default_ms = default_duration_ms

    def cost_of(self, test: str) -> float:
        """Return the cost used to place *test*."""
        return self._history.get(test, self._default_ms)

    def update_duration(self, test: str, duration_ms: float) -> None:
        """Record a new duration for *test*, persisting it immediately."""
        self._history.record(test, duration_ms)

    def _select(self, tests: Sequence[str], descriptor: ShardDescriptor) -> list[str]:
        buckets = balance_by_cost(tests, descriptor.total, self.cost_of)
        return buckets[descriptor.position].tests


# ── Factory ───────────────────────────────────────────────────────

STRATEGY_NAMES: tuple[str, ...] = (
    RoundRobinStrategy.name,
    HashBasedStrategy.name,
    FileSizeStrategy.name,
    HistoryWeightedStrategy.name,
)


def create_strategy(
    name: str,
    *,
    root: Path | None = None,
    history: DurationHistory | None = None,
    default_duration_ms: float = DEFAULT_DURATION_MS,
) -> ShardingStrategy:
    """Build a strategy by its configured name.

    The ``smart`` strategy loads a history store from *root* when none is
    given.

    Raises:
        ShardConfigurationError: If *name* is not a known strategy.
    """
    key = name.strip().lower()
    logger.debug("Creating %s sharding strategy", key)
    if key == RoundRobinStrategy.name:
        return RoundRobinStrategy()
    if key == HashBasedStrategy.name:
        return HashBasedStrategy()
    if key == FileSizeStrategy.name:
        return FileSizeStrategy(root=root)
    if key == HistoryWeightedStrategy.name:
        if history is None:
            from autoshard.memory.duration_history import DurationHistory

            history = DurationHistory(root or Path.cwd())
            history.load()
        return HistoryWeightedStrategy(history, default_duration_ms=default_duration_ms)

    msg = f"unknown sharding strategy {name!r} (expected one of: {', '.join(STRATEGY_NAMES)})"
    raise ShardConfigurationError(msg)
