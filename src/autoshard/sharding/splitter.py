"""Test discovery: the full, ordered test list that strategies partition."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from autoshard.utils.subprocess_runner import run_subprocess

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from autoshard.config import TestsConfig

logger = logging.getLogger(__name__)


def discover_test_files(project_path: Path, patterns: Sequence[str]) -> list[str]:
    """Discover test files matching the given glob patterns.

    Args:
        project_path: Root of the project.
        patterns: Glob patterns relative to *project_path*.

    Returns:
        Sorted list of unique test file paths, relative to *project_path*
        and in POSIX form so every machine sees identical identifiers.
    """
    files: set[str] = set()
    for pattern in patterns:
        for match in project_path.glob(pattern):
            if match.is_file():
                files.add(match.relative_to(project_path).as_posix())
    return sorted(files)


async def list_tests_with_command(
    command: Sequence[str],
    cwd: Path,
    *,
    timeout: float = 120.0,
) -> list[str]:
    """Run an external listing command and return its non-empty output lines.

    Raises:
        SubprocessError: If the command cannot be run or exits non-zero.
    """
    result = await run_subprocess(command, cwd=cwd, timeout=timeout, check=True)
    tests = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    logger.debug("Listing command returned %d tests", len(tests))
    return tests


async def collect_test_ids(tests_config: TestsConfig, project_path: Path) -> list[str]:
    """Return the full test list for a project.

    Uses ``tests.list_command`` when configured, otherwise globs
    ``tests.patterns`` under *project_path*.
    """
    if tests_config.list_command:
        return await list_tests_with_command(
            tests_config.list_command,
            project_path,
            timeout=tests_config.list_timeout,
        )
    return discover_test_files(project_path, tests_config.patterns)
