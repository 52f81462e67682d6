"""Bounded-concurrency supervisor that runs every shard as its own process.

The runner claims shards through a :class:`ShardCoordinator`, spawns one OS
process per claimed shard and reacts to process exits.  Each process is
awaited by a watcher task that posts a :class:`ShardExit` message to a queue;
the supervising coroutine blocks on that queue, so it never polls.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from autoshard.coordination.models import ShardStatus
from autoshard.sharding.context import ShardContext
from autoshard.sharding.descriptor import ShardConfigurationError
from autoshard.utils.subprocess_runner import spawn_process

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence
    from pathlib import Path

    from autoshard.coordination.coordinator import ShardCoordinator

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
SPAWN_FAILURE_EXIT_CODE = 127
"""Exit code recorded when a shard process could not be started."""


class ShardProcess(Protocol):
    """The part of a process handle the runner relies on."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...


@dataclass
class ShardExit:
    """Message posted when a shard process exits."""

    shard_id: int
    exit_code: int


@dataclass
class RunSummary:
    """Outcome of a :meth:`ShardRunner.run` call."""

    total_shards: int
    """Number of shard ids."""

    completed: list[int] = field(default_factory=list)
    """Ids that finished with exit code 0."""

    failed: list[int] = field(default_factory=list)
    """Ids whose last attempt failed."""

    unresolved: list[int] = field(default_factory=list)
    """Ids still pending or running under another owner when the run ended."""

    attempts: dict[int, int] = field(default_factory=dict)
    """Number of processes this runner started per shard id."""

    max_active: int = 0
    """Largest number of simultaneously active processes observed."""

    @property
    def success(self) -> bool:
        """True when every shard id completed."""
        return len(self.completed) == self.total_shards


@dataclass
class _ActiveShard:
    process: ShardProcess
    watcher: asyncio.Task[None]


class CommandSpawner:
    """Starts a shard by running a command with the shard context in its env.

    ``{index}`` and ``{total}`` in any command argument are replaced with the
    shard's values.

    Args:
        command: Command and arguments to run for every shard.
        cwd: Working directory of the shard processes.
        env: Extra variables for every shard process.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            msg = "shard command cannot be empty"
            raise ShardConfigurationError(msg)
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env or {})

    def build_command(self, context: ShardContext) -> list[str]:
        """Return the command line for *context*."""
        index = "" if context.index is None else str(context.index)
        return [
            part.replace("{index}", index).replace("{total}", str(context.total))
            for part in self._command
        ]

    async def __call__(self, context: ShardContext) -> asyncio.subprocess.Process:
        env = {**self._env, **context.to_env()}
        return await spawn_process(self.build_command(context), cwd=self._cwd, env=env)


class ShardRunner:
    """Runs all shards of a coordinator with at most *max_parallel* at once.

    A shard whose process fails is retried until it has been attempted
    ``max_retries + 1`` times; after that it stays failed for the rest of
    the run.

    Args:
        coordinator: Coordinator that hands out shard claims.
        spawner: Coroutine function starting the process for a context.
        max_parallel: Upper bound on simultaneously running processes.
        max_retries: Additional attempts granted to a failing shard.
        on_shard_complete: Called with ``(shard_id, exit_code)`` after each
            exit.  May be a coroutine function.  Errors are logged.
        merge_coverage: Value of the coverage-merge flag in every context.

    Raises:
        ShardConfigurationError: If *max_parallel* or *max_retries* is invalid.
    """

    def __init__(
        self,
        coordinator: ShardCoordinator,
        spawner: Callable[[ShardContext], Awaitable[ShardProcess]],
        *,
        max_parallel: int,
        max_retries: int = DEFAULT_MAX_RETRIES,
        on_shard_complete: Callable[[int, int], Awaitable[None] | None] | None = None,
        merge_coverage: bool = False,
    ) -> None:
        if max_parallel < 1:
            msg = f"max_parallel must be >= 1, got {max_parallel}"
            raise ShardConfigurationError(msg)
        if max_retries < 0:
            msg = f"max_retries must be >= 0, got {max_retries}"
            raise ShardConfigurationError(msg)
        self._coordinator = coordinator
        self._spawner = spawner
        self._max_parallel = max_parallel
        self._max_retries = max_retries
        self._on_shard_complete = on_shard_complete
        self._merge_coverage = merge_coverage

    async def run(self) -> RunSummary:
        """Claim and run shards until nothing is claimable and none is active."""
        total = self._coordinator.total
        queue: asyncio.Queue[ShardExit] = asyncio.Queue()
        active: dict[int, _ActiveShard] = {}
        attempts: dict[int, int] = {}
        exhausted: set[int] = set()
        max_active = 0

        self._coordinator.ensure_directory()
        logger.info("Running %d shards with up to %d in parallel", total, self._max_parallel)

        try:
            while True:
                while len(active) < self._max_parallel:
                    shard_id = self._coordinator.determine_next_available_shard(
                        exclude=exhausted | active.keys()
                    )
                    if shard_id is None:
                        break

                    attempts[shard_id] = attempts.get(shard_id, 0) + 1
                    if attempts[shard_id] > self._max_retries:
                        exhausted.add(shard_id)

                    started = await self._start(shard_id, queue)
                    if started is None:
                        await self._handle_exit(ShardExit(shard_id, SPAWN_FAILURE_EXIT_CODE))
                        continue
                    active[shard_id] = started
                    max_active = max(max_active, len(active))

                if not active:
                    break

                message = await queue.get()
                finished = active.pop(message.shard_id, None)
                if finished is not None:
                    await finished.watcher
                await self._handle_exit(message)
        finally:
            if active:
                await self._abandon(active)

        return self._summarize(attempts, max_active)

    async def _start(self, shard_id: int, queue: asyncio.Queue[ShardExit]) -> _ActiveShard | None:
        total = self._coordinator.total
        context = ShardContext(
            total=total,
            index=shard_id,
            auto=True,
            merge_coverage=self._merge_coverage,
        )
        logger.info("Starting shard %d/%d", shard_id, total)
        try:
            process = await self._spawner(context)
        except (OSError, ValueError) as exc:
            logger.error("Could not start shard %d/%d: %s", shard_id, total, exc)
            return None

        if process.pid is not None:
            self._coordinator.record_owner(shard_id, process.pid)
        watcher = asyncio.create_task(self._watch(shard_id, process, queue))
        return _ActiveShard(process=process, watcher=watcher)

    @staticmethod
    async def _watch(shard_id: int, process: ShardProcess, queue: asyncio.Queue[ShardExit]) -> None:
        exit_code = -1
        try:
            exit_code = await process.wait()
        finally:
            queue.put_nowait(ShardExit(shard_id, exit_code))

    async def _handle_exit(self, message: ShardExit) -> None:
        total = self._coordinator.total
        log = logger.info if message.exit_code == 0 else logger.warning
        log("Shard %d/%d finished with exit code %d", message.shard_id, total, message.exit_code)
        self._coordinator.mark_complete(message.shard_id, message.exit_code)

        if self._on_shard_complete is None:
            return
        try:
            result = self._on_shard_complete(message.shard_id, message.exit_code)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Completion callback failed for shard %d", message.shard_id)

    async def _abandon(self, active: dict[int, _ActiveShard]) -> None:
        """Stop processes still running when the run is interrupted."""
        for shard_id, entry in active.items():
            logger.warning("Stopping shard %d", shard_id)
            if entry.process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    entry.process.terminate()
            entry.watcher.cancel()
            self._coordinator.release(shard_id)
        await asyncio.gather(*(entry.watcher for entry in active.values()), return_exceptions=True)

    def _summarize(self, attempts: dict[int, int], max_active: int) -> RunSummary:
        coordinator = self._coordinator
        unresolved = sorted(
            coordinator.shard_ids_with_status(ShardStatus.PENDING)
            + coordinator.shard_ids_with_status(ShardStatus.RUNNING)
        )
        summary = RunSummary(
            total_shards=coordinator.total,
            completed=coordinator.shard_ids_with_status(ShardStatus.COMPLETED),
            failed=coordinator.shard_ids_with_status(ShardStatus.FAILED),
            unresolved=unresolved,
            attempts=dict(sorted(attempts.items())),
            max_active=max_active,
        )
        logger.info(
            "Shard run finished: %d completed, %d failed, %d unresolved",
            len(summary.completed),
            len(summary.failed),
            len(summary.unresolved),
        )
        return summary
