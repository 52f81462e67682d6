"""Shared fixtures for autoshard tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

pytest_plugins = ["pytester"]


@pytest.fixture(autouse=True)
def _isolated_shard_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep shard and CI variables of the outer environment out of tests."""
    for name in (
        "AUTOSHARD_TOTAL_SHARDS",
        "AUTOSHARD_SHARD_INDEX",
        "AUTOSHARD_AUTO",
        "AUTOSHARD_MERGE_COVERAGE",
        "AUTOSHARD_STRATEGY",
        "CI",
        "GITHUB_ACTIONS",
        "GITLAB_CI",
        "CI_NODE_INDEX",
        "CI_NODE_TOTAL",
        "CIRCLECI",
        "CIRCLE_NODE_INDEX",
        "CIRCLE_NODE_TOTAL",
        "BUILDKITE",
        "BUILDKITE_PARALLEL_JOB",
        "BUILDKITE_PARALLEL_JOB_COUNT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project with six test files of different sizes."""
    tests_dir = tmp_path / "tests"
    tests_dir.mkdir()
    for name, size in (("a", 100), ("b", 600), ("c", 300), ("d", 50), ("e", 900), ("f", 200)):
        (tests_dir / f"test_{name}.py").write_text("#" * size)
    return tmp_path
