"""CI provider detection and native parallel-job variables.

Several CI providers split a job into N parallel nodes and tell each node
its position.  autoshard uses those values when no shard index/total is
given explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from autoshard.sharding.descriptor import ShardDescriptor

if TYPE_CHECKING:
    from collections.abc import Mapping


@dataclass
class CIContext:
    """Detected CI execution context."""

    is_ci: bool
    """Running in CI environment."""

    provider: str | None = None
    """CI provider name (e.g. ``gitlab``), None when unknown."""

    node_index: int | None = None
    """1-based index of this parallel node."""

    node_total: int | None = None
    """Number of parallel nodes in the job."""

    def shard_descriptor(self) -> ShardDescriptor | None:
        """Return the provider's parallel-node position as a descriptor."""
        if self.node_index is None or self.node_total is None or self.node_total < 1:
            return None
        return ShardDescriptor(index=self.node_index, total=self.node_total)


def detect_ci_context(env: Mapping[str, str] | None = None) -> CIContext:
    """Detect the CI provider and its parallel-node variables.

    Supports GitHub Actions, GitLab CI, CircleCI, Buildkite, and generic CI
    detection.  GitHub Actions has no native node variables; its matrix
    jobs pass ``--shard-index``/``--shard-total`` explicitly.

    Args:
        env: Environment to inspect. Defaults to ``os.environ``.

    Returns:
        CIContext with detected values.
    """
    environ = os.environ if env is None else env

    if environ.get("GITHUB_ACTIONS") == "true":
        return CIContext(is_ci=True, provider="github-actions")

    # GitLab CI (CI_NODE_INDEX is 1-based)
    if environ.get("GITLAB_CI") == "true":
        return CIContext(
            is_ci=True,
            provider="gitlab",
            node_index=_parse_int(environ.get("CI_NODE_INDEX")),
            node_total=_parse_int(environ.get("CI_NODE_TOTAL")),
        )

    # CircleCI (CIRCLE_NODE_INDEX is 0-based)
    if environ.get("CIRCLECI") == "true":
        return CIContext(
            is_ci=True,
            provider="circleci",
            node_index=_one_based(environ.get("CIRCLE_NODE_INDEX")),
            node_total=_parse_int(environ.get("CIRCLE_NODE_TOTAL")),
        )

    # Buildkite (BUILDKITE_PARALLEL_JOB is 0-based)
    if environ.get("BUILDKITE") == "true":
        return CIContext(
            is_ci=True,
            provider="buildkite",
            node_index=_one_based(environ.get("BUILDKITE_PARALLEL_JOB")),
            node_total=_parse_int(environ.get("BUILDKITE_PARALLEL_JOB_COUNT")),
        )

    if environ.get("CI", "").lower() in ("true", "1"):
        return CIContext(is_ci=True)

    return CIContext(is_ci=False)


def _parse_int(value: str | None) -> int | None:
    """Parse string to int, return None if invalid."""
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _one_based(value: str | None) -> int | None:
    parsed = _parse_int(value)
    return None if parsed is None else parsed + 1
