"""Shard-count heuristics."""

from __future__ import annotations

import math
import os

TESTS_PER_DETECTED_SHARD = 10
TESTS_PER_RECOMMENDED_SHARD = 20
MAX_DETECTED_SHARDS = 8


def _cpus(cpu_count: int | None) -> int:
    return max(1, cpu_count if cpu_count is not None else (os.cpu_count() or 1))


def detect_shard_count(test_count: int, cpu_count: int | None = None) -> int:
    """Shard count used when none is configured.

    One shard per ten tests, capped by the CPU count and by eight.
    """
    by_tests = max(1, test_count // TESTS_PER_DETECTED_SHARD)
    return min(_cpus(cpu_count), by_tests, MAX_DETECTED_SHARDS)


def recommend_shard_count(test_count: int, cpu_count: int | None = None) -> int:
    """Shard count suggested by ``autoshard analyze``: one per twenty tests."""
    by_tests = max(1, math.ceil(test_count / TESTS_PER_RECOMMENDED_SHARD))
    return min(_cpus(cpu_count), by_tests)
