"""Configuration parsing from ``.autoshard.yml``."""

from __future__ import annotations

import logging
import os
import re
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from autoshard.coordination.coordinator import STALE_LOCK_SECONDS, coordination_dir_for
from autoshard.coordination.runner import DEFAULT_MAX_RETRIES
from autoshard.coverage.collector import REPORT_FORMATS
from autoshard.memory.duration_history import DEFAULT_HISTORY_FILE, DurationHistory
from autoshard.sharding.strategies import (
    DEFAULT_DURATION_MS,
    STRATEGY_NAMES,
    HistoryWeightedStrategy,
    ShardingStrategy,
    create_strategy,
)

logger = logging.getLogger(__name__)

CONFIG_FILE = ".autoshard.yml"

_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")

DEFAULT_TEST_PATTERNS = ["tests/**/test_*.py", "tests/**/*_test.py"]
DEFAULT_TEST_COMMAND = [sys.executable, "-m", "pytest", "-p", "autoshard.pytest_plugin"]


def _resolve_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var = match.group(1)
        resolved = os.environ.get(var)
        if resolved is None:
            logger.warning("Environment variable %s is not set (referenced in config)", var)
            return ""
        return resolved

    return _ENV_VAR_RE.sub(_replace, value)


def _resolve_value(value: Any) -> Any:
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, dict):
        return {key: _resolve_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_value(item) for item in value]
    return value


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name, {})
    return section if isinstance(section, dict) else {}


def _command(value: Any) -> list[str]:
    """Accept a command as a shell-style string or a list of arguments."""
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list):
        return [str(part) for part in value]
    return []


def _string_list(value: Any, default: list[str]) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value]
    return list(default)


@dataclass
class ShardingConfig:
    """How the suite is split and how shards are run."""

    total: int = 0
    """Number of shards; 0 detects it from the test count."""

    max_parallel: int = 0
    """Simultaneous shard processes in auto mode; 0 uses the CPU count."""

    strategy: str = "round-robin"
    """Assignment strategy (round-robin, hash, size, smart)."""

    max_retries: int = DEFAULT_MAX_RETRIES
    """Extra attempts for a failing shard in auto mode."""

    coordination_dir: str = ""
    """Shared coordination directory; empty derives one under the temp dir."""

    stale_after: float = STALE_LOCK_SECONDS
    """Seconds after which a shard lock is considered abandoned."""


@dataclass
class TestsConfig:
    """Test discovery and execution."""

    __test__ = False

    patterns: list[str] = field(default_factory=lambda: list(DEFAULT_TEST_PATTERNS))
    """Glob patterns for test files, relative to the project root."""

    list_command: list[str] = field(default_factory=list)
    """Command printing one test identifier per line; overrides ``patterns``."""

    list_timeout: float = 120.0
    """Timeout in seconds for ``list_command``."""

    command: list[str] = field(default_factory=lambda: list(DEFAULT_TEST_COMMAND))
    """Command run for each shard (``{index}``/``{total}`` are substituted)."""


@dataclass
class HistoryConfig:
    """Duration history used by the ``smart`` strategy."""

    file: str = DEFAULT_HISTORY_FILE
    """History file name inside ``.autoshard/``."""

    default_duration_ms: float = DEFAULT_DURATION_MS
    """Cost assumed for tests without recorded duration."""


@dataclass
class CoverageConfig:
    """Per-shard coverage collection and merging."""

    enabled: bool = False
    """Collect and merge coverage."""

    shard_dir: str = "coverage-shards"
    """Directory for per-shard coverage files."""

    final_dir: str = "coverage-final"
    """Directory for the merged report."""

    raw_report: str = ".autoshard/coverage/raw-{index}.json"
    """coverage.py JSON written by each shard's test command."""

    formats: list[str] = field(default_factory=lambda: ["text"])
    """Summary formats written next to ``coverage-final.json``."""

    cleanup_shard_files: bool = False
    """Delete per-shard files after a successful merge."""

    def raw_report_path(self, root: Path, shard_index: int) -> Path:
        """Raw coverage report location of *shard_index*."""
        return root / self.raw_report.replace("{index}", str(shard_index))


@dataclass
class AutoshardConfig:
    """Complete autoshard configuration from ``.autoshard.yml``."""

    root: str
    """Project root directory."""

    sharding: ShardingConfig = field(default_factory=ShardingConfig)
    tests: TestsConfig = field(default_factory=TestsConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)

    raw: dict[str, Any] = field(default_factory=dict)
    """Raw parsed YAML for extension/debugging."""

    @property
    def root_path(self) -> Path:
        return Path(self.root)

    def coordination_dir(self) -> Path:
        """Configured coordination directory or the derived default."""
        if self.sharding.coordination_dir:
            path = Path(self.sharding.coordination_dir)
            return path if path.is_absolute() else self.root_path / path
        return coordination_dir_for(self.root_path)

    def resolve(self, relative: str) -> Path:
        """Resolve a configured path against the project root."""
        path = Path(relative)
        return path if path.is_absolute() else self.root_path / path


def _parse_sharding_config(raw: dict[str, Any]) -> ShardingConfig:
    """Parse sharding configuration from raw YAML."""
    sharding_raw = _section(raw, "sharding")
    return ShardingConfig(
        total=int(sharding_raw.get("total", 0) or 0),
        max_parallel=int(sharding_raw.get("max_parallel", 0) or 0),
        strategy=str(sharding_raw.get("strategy", "round-robin")),
        max_retries=int(sharding_raw.get("max_retries", DEFAULT_MAX_RETRIES)),
        coordination_dir=str(sharding_raw.get("coordination_dir", "") or ""),
        stale_after=float(sharding_raw.get("stale_after", STALE_LOCK_SECONDS)),
    )


def _parse_tests_config(raw: dict[str, Any]) -> TestsConfig:
    """Parse test discovery configuration from raw YAML."""
    tests_raw = _section(raw, "tests")
    command = _command(tests_raw.get("command"))
    return TestsConfig(
        patterns=_string_list(tests_raw.get("patterns"), DEFAULT_TEST_PATTERNS),
        list_command=_command(tests_raw.get("list_command")),
        list_timeout=float(tests_raw.get("list_timeout", 120.0)),
        command=command or list(DEFAULT_TEST_COMMAND),
    )


def _parse_history_config(raw: dict[str, Any]) -> HistoryConfig:
    """Parse duration history configuration from raw YAML."""
    history_raw = _section(raw, "history")
    return HistoryConfig(
        file=str(history_raw.get("file", DEFAULT_HISTORY_FILE)),
        default_duration_ms=float(history_raw.get("default_duration_ms", DEFAULT_DURATION_MS)),
    )


def _parse_coverage_config(raw: dict[str, Any]) -> CoverageConfig:
    """Parse coverage configuration from raw YAML."""
    coverage_raw = _section(raw, "coverage")
    defaults = CoverageConfig()
    return CoverageConfig(
        enabled=bool(coverage_raw.get("enabled", False)),
        shard_dir=str(coverage_raw.get("shard_dir", defaults.shard_dir)),
        final_dir=str(coverage_raw.get("final_dir", defaults.final_dir)),
        raw_report=str(coverage_raw.get("raw_report", defaults.raw_report)),
        formats=_string_list(coverage_raw.get("formats"), defaults.formats),
        cleanup_shard_files=bool(coverage_raw.get("cleanup_shard_files", False)),
    )


def load_config(root: str | Path) -> AutoshardConfig:
    """Load and parse the ``.autoshard.yml`` configuration.

    Falls back to defaults when the file is missing or incomplete.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If a numeric setting cannot be converted.
    """
    root_path = Path(root).resolve()
    config_file = root_path / CONFIG_FILE

    raw: dict[str, Any] = {}
    if config_file.is_file():
        parsed = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        if isinstance(parsed, dict):
            raw = _resolve_value(parsed)
        elif parsed is not None:
            logger.warning("Ignoring %s: top level must be a mapping", config_file)
    else:
        logger.debug("No %s found in %s, using defaults", CONFIG_FILE, root_path)

    return AutoshardConfig(
        root=str(root_path),
        sharding=_parse_sharding_config(raw),
        tests=_parse_tests_config(raw),
        history=_parse_history_config(raw),
        coverage=_parse_coverage_config(raw),
        raw=raw,
    )


def _validate_sharding_config(sharding: ShardingConfig) -> list[str]:
    """Validate sharding settings."""
    errors: list[str] = []

    if sharding.total < 0:
        errors.append(f"sharding.total must be non-negative (got: {sharding.total})")

    if sharding.max_parallel < 0:
        errors.append(
            f"sharding.max_parallel must be non-negative (got: {sharding.max_parallel})"
        )

    if sharding.strategy.strip().lower() not in STRATEGY_NAMES:
        errors.append(
            f"sharding.strategy must be one of {', '.join(STRATEGY_NAMES)} "
            f"(got: {sharding.strategy})"
        )

    if sharding.max_retries < 0:
        errors.append(f"sharding.max_retries must be non-negative (got: {sharding.max_retries})")

    if sharding.stale_after <= 0:
        errors.append(f"sharding.stale_after must be positive (got: {sharding.stale_after})")

    return errors


def _validate_tests_config(tests: TestsConfig) -> list[str]:
    """Validate test discovery settings."""
    errors: list[str] = []

    if not tests.list_command and not tests.patterns:
        errors.append("tests.patterns or tests.list_command is required")

    if tests.list_timeout <= 0:
        errors.append(f"tests.list_timeout must be positive (got: {tests.list_timeout})")

    return errors


def _validate_coverage_config(coverage: CoverageConfig) -> list[str]:
    """Validate coverage settings."""
    return [
        f"coverage.formats entries must be one of {', '.join(REPORT_FORMATS)} (got: {fmt})"
        for fmt in coverage.formats
        if fmt not in REPORT_FORMATS
    ]


def validate_config(config: AutoshardConfig) -> list[str]:
    """Validate the configuration and return a list of error messages.

    Returns an empty list if the configuration is valid.
    """
    errors: list[str] = []

    errors.extend(_validate_sharding_config(config.sharding))
    errors.extend(_validate_tests_config(config.tests))

    if config.history.default_duration_ms < 0:
        errors.append(
            "history.default_duration_ms must be non-negative "
            f"(got: {config.history.default_duration_ms})"
        )

    errors.extend(_validate_coverage_config(config.coverage))
    return errors


def build_strategy(config: AutoshardConfig, name: str | None = None) -> ShardingStrategy:
    """Create the configured assignment strategy, or *name* when given.

    The ``smart`` strategy gets the project's duration history, loaded.

    Raises:
        ShardConfigurationError: If the strategy name is unknown.
    """
    strategy_name = name or config.sharding.strategy
    history = None
    if strategy_name.strip().lower() == HistoryWeightedStrategy.name:
        history = DurationHistory(config.root_path, config.history.file)
        history.load()
    return create_strategy(
        strategy_name,
        root=config.root_path,
        history=history,
        default_duration_ms=config.history.default_duration_ms,
    )
