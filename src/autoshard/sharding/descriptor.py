"""Shard descriptors and configuration errors."""

from __future__ import annotations

from dataclasses import dataclass


class ShardConfigurationError(ValueError):
    """Raised for an invalid shard count, parallelism, strategy or context."""


@dataclass(frozen=True)
class ShardDescriptor:
    """Identifies one partition of the test list.

    ``index`` is 1-based.  An index outside ``1..total`` is allowed and
    simply selects nothing; a non-positive ``total`` is rejected.
    """

    index: int
    """1-based shard index."""

    total: int
    """Total number of shards."""

    def __post_init__(self) -> None:
        if self.total < 1:
            msg = f"total shard count must be >= 1, got {self.total}"
            raise ShardConfigurationError(msg)

    @property
    def is_valid_index(self) -> bool:
        """Return True when ``index`` lies in ``1..total``."""
        return 1 <= self.index <= self.total

    @property
    def position(self) -> int:
        """Zero-based bucket position for this shard."""
        return self.index - 1

    @classmethod
    def parse(cls, text: str) -> ShardDescriptor:
        """Parse an ``"index/total"`` string such as ``"2/4"``."""
        index_text, sep, total_text = text.strip().partition("/")
        if not sep:
            msg = f"expected INDEX/TOTAL, got {text!r}"
            raise ShardConfigurationError(msg)
        try:
            return cls(index=int(index_text), total=int(total_text))
        except ValueError as exc:
            if isinstance(exc, ShardConfigurationError):
                raise
            msg = f"expected INDEX/TOTAL, got {text!r}"
            raise ShardConfigurationError(msg) from exc

    def __str__(self) -> str:
        return f"{self.index}/{self.total}"
