"""The shard context handed from a supervisor to a shard process.

Four values form the whole contract: total shard count, shard index,
auto-shard mode and the coverage-merge trigger.  A supervisor passes them
explicitly in the spawn call's environment; the spawned process reads them
once at startup with :meth:`ShardContext.from_env`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from autoshard.sharding.descriptor import ShardConfigurationError, ShardDescriptor

if TYPE_CHECKING:
    from collections.abc import Mapping

ENV_TOTAL_SHARDS = "AUTOSHARD_TOTAL_SHARDS"
ENV_SHARD_INDEX = "AUTOSHARD_SHARD_INDEX"
ENV_AUTO_SHARD = "AUTOSHARD_AUTO"
ENV_MERGE_COVERAGE = "AUTOSHARD_MERGE_COVERAGE"

ENV_STRATEGY = "AUTOSHARD_STRATEGY"
"""Optional strategy override for spawned processes; not part of the context."""

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _parse_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES


def _parse_positive_int(name: str, value: str) -> int:
    try:
        parsed = int(value.strip())
    except ValueError as exc:
        msg = f"{name} must be an integer, got {value!r}"
        raise ShardConfigurationError(msg) from exc
    if parsed < 1:
        msg = f"{name} must be >= 1, got {parsed}"
        raise ShardConfigurationError(msg)
    return parsed


@dataclass(frozen=True)
class ShardContext:
    """Shard assignment for one test process."""

    total: int
    """Total number of shards."""

    index: int | None = None
    """1-based shard index; ``None`` lets an auto-mode process claim one."""

    auto: bool = False
    """True when shards are handed out through the coordinator."""

    merge_coverage: bool = False
    """Merge shard coverage as soon as this shard finishes."""

    def __post_init__(self) -> None:
        if self.total < 1:
            msg = f"total shard count must be >= 1, got {self.total}"
            raise ShardConfigurationError(msg)

    @property
    def descriptor(self) -> ShardDescriptor:
        """Descriptor for this context.

        Raises:
            ShardConfigurationError: If no index has been assigned yet.
        """
        if self.index is None:
            msg = "shard index has not been assigned"
            raise ShardConfigurationError(msg)
        return ShardDescriptor(index=self.index, total=self.total)

    def with_index(self, index: int) -> ShardContext:
        """Return a copy of this context bound to *index*."""
        return replace(self, index=index)

    def to_env(self) -> dict[str, str]:
        """Render the context as environment variables for a spawn call."""
        env = {
            ENV_TOTAL_SHARDS: str(self.total),
            ENV_AUTO_SHARD: "true" if self.auto else "false",
            ENV_MERGE_COVERAGE: "true" if self.merge_coverage else "false",
        }
        if self.index is not None:
            env[ENV_SHARD_INDEX] = str(self.index)
        return env

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> ShardContext | None:
        """Read a context from *env*.

        Returns:
            The context, or None when no total shard count is set.

        Raises:
            ShardConfigurationError: If a value is malformed.
        """
        total_raw = env.get(ENV_TOTAL_SHARDS, "").strip()
        if not total_raw:
            return None

        total = _parse_positive_int(ENV_TOTAL_SHARDS, total_raw)
        index_raw = env.get(ENV_SHARD_INDEX, "").strip()
        index = _parse_positive_int(ENV_SHARD_INDEX, index_raw) if index_raw else None

        return cls(
            total=total,
            index=index,
            auto=_parse_flag(env.get(ENV_AUTO_SHARD)),
            merge_coverage=_parse_flag(env.get(ENV_MERGE_COVERAGE)),
        )
