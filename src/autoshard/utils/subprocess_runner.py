"""Asyncio subprocess helpers.

``run_subprocess`` runs a short command to completion with captured output
and a timeout (used for test-listing commands).  ``spawn_process`` starts a
long-running shard process whose output goes straight to the terminal.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass
class SubprocessResult:
    """Result of subprocess execution."""

    returncode: int
    """Exit code of the process."""

    stdout: str
    """Standard output captured from the process."""

    stderr: str
    """Standard error captured from the process."""

    success: bool
    """True if returncode is 0."""

    timed_out: bool = False
    """True if the process was terminated due to timeout."""

    duration_ms: float = 0.0
    """Actual duration of execution in milliseconds."""


def _merged_env(env: Mapping[str, str] | None) -> dict[str, str]:
    """Return a copy of the current environment overlaid with *env*."""
    full_env = dict(os.environ)
    if env:
        full_env.update(env)
    return full_env


def _resolve_cwd(cwd: Path | None) -> Path:
    work_dir = cwd.resolve() if cwd else Path.cwd()
    if not work_dir.exists():
        raise ValueError(f"Working directory does not exist: {work_dir}")
    return work_dir


async def run_subprocess(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float = 120.0,
    env: Mapping[str, str] | None = None,
    check: bool = False,
) -> SubprocessResult:
    """Execute a command to completion with timeout and captured output.

    Args:
        command: Command and arguments (e.g. ``['pytest', '--collect-only', '-q']``).
        cwd: Working directory. Defaults to the current directory.
        timeout: Maximum seconds to wait for completion.
        env: Variables added on top of the current environment.
        check: If True, raise SubprocessError on a non-zero exit code.

    Returns:
        SubprocessResult with exit code, output, and timing.

    Raises:
        SubprocessError: If the command cannot be started, or if ``check``
            is set and it fails.
        ValueError: If command is empty, timeout is invalid, or the working
            directory does not exist.
    """
    if not command:
        raise ValueError("Command cannot be empty")

    if timeout <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout}")

    work_dir = _resolve_cwd(cwd)

    logger.debug(
        "Running subprocess: %s (cwd=%s, timeout=%s)",
        " ".join(str(c) for c in command),
        work_dir,
        timeout,
    )

    start_time = time.perf_counter()
    timed_out = False

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=work_dir,
            env=_merged_env(env),
        )
    except FileNotFoundError as exc:
        logger.error("Command not found: %s", command[0])
        raise SubprocessError(
            f"Command not found: {command[0]}",
            result=SubprocessResult(returncode=-1, stdout="", stderr=str(exc), success=False),
        ) from exc
    except OSError as exc:
        raise SubprocessError(
            f"Could not start {command[0]}: {exc}",
            result=SubprocessResult(returncode=-1, stdout="", stderr=str(exc), success=False),
        ) from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning("Subprocess timed out after %s seconds", timeout)
        timed_out = True
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass  # already exited

        stdout_bytes = b""
        stderr_bytes = b"Process timed out and was killed"

    duration_ms = (time.perf_counter() - start_time) * 1000

    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    returncode = process.returncode if process.returncode is not None else -1
    if timed_out and returncode == 0:
        returncode = -1

    result = SubprocessResult(
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        success=(returncode == 0 and not timed_out),
        timed_out=timed_out,
        duration_ms=duration_ms,
    )

    logger.debug(
        "Subprocess completed: returncode=%d, duration=%.2fms, success=%s",
        returncode,
        duration_ms,
        result.success,
    )

    if check and not result.success:
        raise SubprocessError(
            f"Command failed with exit code {returncode}: {' '.join(str(c) for c in command)}",
            result=result,
        )

    return result


async def spawn_process(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> asyncio.subprocess.Process:
    """Start *command* with inherited stdio and return its process handle.

    Raises:
        OSError: If the executable cannot be started.
        ValueError: If command is empty or the working directory is missing.
    """
    if not command:
        raise ValueError("Command cannot be empty")

    work_dir = _resolve_cwd(cwd)
    logger.debug("Spawning: %s (cwd=%s)", " ".join(str(c) for c in command), work_dir)
    return await asyncio.create_subprocess_exec(*command, cwd=work_dir, env=_merged_env(env))


class SubprocessError(Exception):
    """Exception raised when subprocess execution fails."""

    def __init__(self, message: str, result: SubprocessResult) -> None:
        """Initialize with error message and result.

        Args:
            message: Error description.
            result: The SubprocessResult from the failed execution.
        """
        super().__init__(message)
        self.result = result
