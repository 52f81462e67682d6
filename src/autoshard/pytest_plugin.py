"""pytest plugin selecting the tests of one shard.

Load it with ``pytest -p autoshard.pytest_plugin``.  The shard comes from
``--shard-index``/``--shard-total``, else from the ``AUTOSHARD_*``
environment set by ``autoshard run``, else from the CI provider's
parallel-node variables.  Without any of those the plugin stays inactive.

Tests are assigned per file: every process re-runs the configured strategy
over the collected test files and deselects the files that belong to other
shards.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from typing import TYPE_CHECKING

import pytest
import yaml

from autoshard.config import AutoshardConfig, build_strategy, load_config
from autoshard.coordination.coordinator import ShardCoordinator
from autoshard.memory.duration_history import DurationHistory
from autoshard.sharding.context import ENV_STRATEGY, ShardContext
from autoshard.sharding.descriptor import ShardConfigurationError
from autoshard.sharding.strategies import STRATEGY_NAMES
from autoshard.utils.ci_context import detect_ci_context

if TYPE_CHECKING:
    from autoshard.sharding.strategies import ShardingStrategy

logger = logging.getLogger(__name__)

PLUGIN_NAME = "autoshard-shard"
_MS_PER_SECOND = 1000.0


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("autoshard", "test sharding")
    group.addoption(
        "--shard-index",
        type=int,
        default=None,
        help="1-based index of the shard to run.",
    )
    group.addoption(
        "--shard-total",
        type=int,
        default=None,
        help="Total number of shards.",
    )
    group.addoption(
        "--shard-strategy",
        choices=STRATEGY_NAMES,
        default=None,
        help="Assignment strategy (default: AUTOSHARD_STRATEGY or .autoshard.yml).",
    )
    group.addoption(
        "--shard-auto",
        action="store_true",
        default=False,
        help="Claim the next free shard through the coordination directory.",
    )


def _resolve_context(config: pytest.Config) -> ShardContext | None:
    """Determine this process's shard context, or None when not sharding.

    Raises:
        pytest.UsageError: If the options or environment are inconsistent.
    """
    index = config.getoption("shard_index")
    total = config.getoption("shard_total")
    auto = config.getoption("shard_auto")

    try:
        if total is not None:
            if index is None and not auto:
                raise pytest.UsageError("--shard-total needs --shard-index or --shard-auto")
            return ShardContext(total=total, index=index, auto=auto)
        if index is not None:
            raise pytest.UsageError("--shard-index needs --shard-total")

        context = ShardContext.from_env(os.environ)
        if context is not None:
            return context

        descriptor = detect_ci_context().shard_descriptor()
        if descriptor is not None:
            return ShardContext(total=descriptor.total, index=descriptor.index)
    except ShardConfigurationError as e:
        raise pytest.UsageError(str(e)) from e
    return None


def _test_file(nodeid: str) -> str:
    return nodeid.split("::", 1)[0]


class ShardSelector:
    """Per-session plugin object deselecting other shards' test files."""

    def __init__(
        self,
        context: ShardContext,
        strategy: ShardingStrategy,
        strategy_name: str,
        history: DurationHistory,
        coordinator: ShardCoordinator | None = None,
    ) -> None:
        self.context = context
        self.strategy = strategy
        self.strategy_name = strategy_name
        self.history = history
        self.coordinator = coordinator
        self.selected_files: list[str] = []
        self.collected_files: list[str] = []
        self.durations: dict[str, float] = defaultdict(float)

    @property
    def claimed_shard(self) -> int | None:
        """Shard id claimed by this process in auto mode."""
        return self.context.index if self.coordinator is not None else None

    def pytest_report_header(self) -> str:
        if self.context.index is None:
            return f"autoshard: no free shard of {self.context.total}"
        return f"autoshard: shard {self.context.descriptor} ({self.strategy_name})"

    @pytest.hookimpl(trylast=True)
    def pytest_collection_modifyitems(
        self, config: pytest.Config, items: list[pytest.Item]
    ) -> None:
        files = sorted({_test_file(item.nodeid) for item in items})
        self.collected_files = files

        if self.context.index is None:
            selected_files: set[str] = set()
        else:
            selected_files = set(self.strategy.distribute(files, self.context.descriptor))
        self.selected_files = [f for f in files if f in selected_files]

        selected: list[pytest.Item] = []
        deselected: list[pytest.Item] = []
        for item in items:
            if _test_file(item.nodeid) in selected_files:
                selected.append(item)
            else:
                deselected.append(item)

        if deselected:
            items[:] = selected
            config.hook.pytest_deselected(items=deselected)

        logger.debug(
            "Shard %s selected %d of %d test files",
            self.context.index,
            len(self.selected_files),
            len(files),
        )

    def pytest_report_collectionfinish(self) -> str:
        return (
            f"autoshard: running {len(self.selected_files)} of "
            f"{len(self.collected_files)} test files"
        )

    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        self.durations[_test_file(report.nodeid)] += report.duration * _MS_PER_SECOND

    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        # An empty shard is a passing shard.
        if exitstatus == pytest.ExitCode.NO_TESTS_COLLECTED and self.collected_files:
            session.exitstatus = pytest.ExitCode.OK

        if self.durations:
            self.history.record_many(self.durations)

        shard_id = self.claimed_shard
        if self.coordinator is not None and shard_id is not None:
            self.coordinator.mark_complete(shard_id, int(session.exitstatus))


def _load_project_config(config: pytest.Config) -> AutoshardConfig:
    try:
        return load_config(config.rootpath)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise pytest.UsageError(f"autoshard: failed to load configuration: {e}") from e


def _claim_shard(
    project: AutoshardConfig, context: ShardContext
) -> tuple[ShardContext, ShardCoordinator]:
    coordinator = ShardCoordinator(
        project.coordination_dir(),
        context.total,
        stale_after=project.sharding.stale_after,
    )
    shard_id = coordinator.determine_next_available_shard()
    if shard_id is None:
        logger.warning("No free shard of %d to claim", context.total)
        return context, coordinator
    logger.info("Claimed shard %d/%d", shard_id, context.total)
    return context.with_index(shard_id), coordinator


def pytest_configure(config: pytest.Config) -> None:
    # xdist workers receive their items from the controller.
    if hasattr(config, "workerinput"):
        return

    context = _resolve_context(config)
    if context is None:
        return

    project = _load_project_config(config)
    strategy_name = (
        config.getoption("shard_strategy")
        or os.environ.get(ENV_STRATEGY)
        or project.sharding.strategy
    )
    try:
        strategy = build_strategy(project, strategy_name)
    except ShardConfigurationError as e:
        raise pytest.UsageError(str(e)) from e

    coordinator = None
    if context.auto and context.index is None:
        context, coordinator = _claim_shard(project, context)

    history = DurationHistory(project.root_path, project.history.file)
    history.load()

    selector = ShardSelector(context, strategy, strategy_name, history, coordinator)
    config.pluginmanager.register(selector, PLUGIN_NAME)
