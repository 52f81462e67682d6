"""autoshard CLI — top-level command group."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import shutil
import time
from typing import TYPE_CHECKING, Any

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from autoshard import __version__
from autoshard.config import AutoshardConfig, build_strategy, load_config, validate_config
from autoshard.coordination.coordinator import STATUS_FILE, ShardCoordinator, load_status_table
from autoshard.coordination.runner import CommandSpawner, ShardRunner
from autoshard.coverage.collector import REPORT_FORMATS, CoverageCollector, CoverageMergeError
from autoshard.coverage.coverage_py import CoverageFormatError, parse_coverage_py_json
from autoshard.reporters.terminal import reporter
from autoshard.sharding.context import ENV_STRATEGY, ShardContext
from autoshard.sharding.descriptor import ShardConfigurationError, ShardDescriptor
from autoshard.sharding.planning import detect_shard_count, recommend_shard_count
from autoshard.sharding.splitter import collect_test_ids
from autoshard.sharding.strategies import STRATEGY_NAMES, ShardingStrategy, file_size
from autoshard.utils.ci_context import detect_ci_context
from autoshard.utils.subprocess_runner import SubprocessError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from autoshard.coverage.models import CoverageReport

logger = logging.getLogger(__name__)

MAX_LARGEST_FILES_DISPLAY = 5


# ── Helpers ────────────────────────────────────────────────────────


def _configure_logging(*, verbose: bool) -> None:
    """Route autoshard's log records through a rich handler on stderr."""
    package_logger = logging.getLogger("autoshard")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        package_logger.addHandler(
            RichHandler(
                console=Console(stderr=True),
                show_time=False,
                show_path=False,
                markup=False,
            )
        )


def _ci_mode() -> bool:
    ctx = click.get_current_context()
    return bool(ctx.obj.get("ci", False)) if ctx.obj else False


def _emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _load_validated_config(path: str) -> AutoshardConfig:
    try:
        config = load_config(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        reporter.print_error(f"Failed to load configuration: {e}")
        raise click.Abort from e

    errors = validate_config(config)
    if errors:
        for error in errors:
            reporter.print_error(error)
        raise click.Abort
    return config


def _collect_tests(config: AutoshardConfig) -> list[str]:
    try:
        return asyncio.run(collect_test_ids(config.tests, config.root_path))
    except SubprocessError as e:
        reporter.print_error(f"Test listing failed: {e}")
        if e.result.stderr.strip():
            reporter.print_info(e.result.stderr.strip())
        raise click.Abort from e


def _strategy(config: AutoshardConfig, name: str | None) -> ShardingStrategy:
    try:
        return build_strategy(config, name)
    except ShardConfigurationError as e:
        raise click.UsageError(str(e)) from e


def _descriptor(index: int, total: int) -> ShardDescriptor:
    try:
        descriptor = ShardDescriptor(index=index, total=total)
    except ShardConfigurationError as e:
        raise click.UsageError(str(e)) from e
    if not descriptor.is_valid_index:
        raise click.UsageError(f"--index must be between 1 and {total} (got: {index})")
    return descriptor


def _test_command(config: AutoshardConfig, command_text: str | None) -> list[str]:
    return shlex.split(command_text) if command_text else list(config.tests.command)


def _coverage_collector(config: AutoshardConfig) -> CoverageCollector:
    return CoverageCollector(
        config.resolve(config.coverage.shard_dir),
        config.resolve(config.coverage.final_dir),
    )


def _store_shard_coverage(
    config: AutoshardConfig, collector: CoverageCollector, shard_index: int
) -> bool:
    """Convert the shard's raw coverage.py report into a shard coverage file.

    Raises:
        CoverageFormatError: If the raw report cannot be parsed.
    """
    raw_path = config.coverage.raw_report_path(config.root_path, shard_index)
    if not raw_path.is_file():
        logger.warning("No coverage report for shard %d at %s", shard_index, raw_path)
        return False
    collector.collect_shard_coverage(shard_index, parse_coverage_py_json(raw_path))
    return True


def _merge_coverage(
    collector: CoverageCollector,
    formats: Sequence[str],
    *,
    cleanup: bool,
) -> CoverageReport:
    try:
        return collector.merge(formats, cleanup_shard_files=cleanup)
    except CoverageMergeError as e:
        reporter.print_error(str(e))
        raise click.Abort from e
    except OSError as e:
        reporter.print_error(f"Failed to write coverage reports: {e}")
        raise click.Abort from e


async def _run_to_exit(spawner: CommandSpawner, context: ShardContext) -> int:
    process = await spawner(context)
    return await process.wait()


_path_option = click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)

_strategy_option = click.option(
    "--strategy",
    type=click.Choice(STRATEGY_NAMES),
    default=None,
    help="Assignment strategy (default from .autoshard.yml).",
)


# ── Command group ──────────────────────────────────────────────────


@click.group()
@click.option(
    "--ci",
    is_flag=True,
    help="CI mode: machine-readable JSON output, exit codes for pass/fail.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.version_option(version=__version__, prog_name="autoshard")
@click.pass_context
def cli(ctx: click.Context, *, ci: bool, verbose: bool) -> None:
    """autoshard — split a test suite into shards and run them in parallel."""
    ctx.ensure_object(dict)
    ctx.obj["ci"] = ci
    _configure_logging(verbose=verbose)


@cli.command()
@_path_option
@click.option(
    "-n",
    "--shards",
    "total",
    type=click.IntRange(min=1),
    default=None,
    help="Number of shards (detected from the test count if omitted).",
)
@click.option(
    "-j",
    "--parallel",
    "max_parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Max shards running at once (defaults to the CPU count).",
)
@_strategy_option
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Extra attempts for a failing shard.",
)
@click.option(
    "--coverage/--no-coverage",
    default=None,
    help="Collect and merge shard coverage (default from .autoshard.yml).",
)
@click.option(
    "--command",
    "command_text",
    default=None,
    help="Test command run for every shard; {index} and {total} are substituted.",
)
def run(**kwargs: Any) -> None:
    """Run every shard locally, in parallel, as separate processes.

    Shards are claimed through a shared coordination directory.  The
    directory is reset before the run unless a live process still holds a
    shard lock; in that case this invocation joins the run in progress and
    only takes the shards that are still free.  The status table is kept
    afterwards for ``autoshard status``.
    """
    path: str = kwargs["path"]
    total: int | None = kwargs.get("total")
    max_parallel: int | None = kwargs.get("max_parallel")
    strategy_name: str | None = kwargs.get("strategy")
    max_retries: int | None = kwargs.get("max_retries")
    coverage: bool | None = kwargs.get("coverage")
    command_text: str | None = kwargs.get("command_text")

    ci_mode = _ci_mode()
    if not ci_mode:
        reporter.print_header("autoshard run")

    config = _load_validated_config(path)
    strategy = strategy_name or config.sharding.strategy

    total = total or config.sharding.total
    if not total:
        tests = _collect_tests(config)
        total = detect_shard_count(len(tests))
        if not ci_mode:
            reporter.print_info(f"Detected {len(tests)} tests, using {total} shards")

    max_parallel = max_parallel or config.sharding.max_parallel or (os.cpu_count() or 1)
    retries = config.sharding.max_retries if max_retries is None else max_retries
    coverage_enabled = config.coverage.enabled if coverage is None else coverage

    try:
        coordinator = ShardCoordinator(
            config.coordination_dir(), total, stale_after=config.sharding.stale_after
        )
        spawner = CommandSpawner(
            _test_command(config, command_text),
            cwd=config.root_path,
            env={ENV_STRATEGY: strategy},
        )
    except ShardConfigurationError as e:
        raise click.UsageError(str(e)) from e

    collector = _coverage_collector(config) if coverage_enabled else None

    live_locks = coordinator.live_lock_ids()
    if live_locks:
        logger.debug("Shards %s are locked by another run, joining it", live_locks)
        if not ci_mode:
            reporter.print_info(
                f"Joining the run in progress (shards {', '.join(map(str, live_locks))} are taken)"
            )
    else:
        coordinator.cleanup()
        if collector is not None:
            collector.cleanup_shard_files()

    def on_shard_complete(shard_id: int, exit_code: int) -> None:
        if collector is not None:
            _store_shard_coverage(config, collector, shard_id)

    runner = ShardRunner(
        coordinator,
        spawner,
        max_parallel=max_parallel,
        max_retries=retries,
        on_shard_complete=on_shard_complete,
    )

    if not ci_mode:
        reporter.print_run_banner(total, max_parallel, strategy)

    started = time.perf_counter()
    summary = asyncio.run(runner.run())
    duration_s = time.perf_counter() - started

    merged = None
    if collector is not None:
        if collector.is_all_shards_complete(total):
            merged = _merge_coverage(
                collector,
                config.coverage.formats,
                cleanup=config.coverage.cleanup_shard_files,
            )
        elif not ci_mode:
            reporter.print_warning(
                f"Coverage reported by {collector.get_shard_count()}/{total} shards, "
                "skipping merge"
            )

    if ci_mode:
        _emit_json(
            {
                "success": summary.success,
                "total_shards": summary.total_shards,
                "completed": summary.completed,
                "failed": summary.failed,
                "unresolved": summary.unresolved,
                "attempts": {str(k): v for k, v in summary.attempts.items()},
                "max_active": summary.max_active,
                "duration_s": round(duration_s, 3),
                "coverage_merged": merged is not None,
            }
        )
    else:
        reporter.print_run_summary(summary, duration_s)
        if merged is not None:
            reporter.print_coverage_summary(merged)

    if not summary.success:
        if not ci_mode:
            reporter.print_error("Some shards did not complete successfully.")
        raise click.Abort

    if not ci_mode:
        reporter.print_success(f"All {total} shards passed!")


@cli.command("test")
@_path_option
@click.option("-i", "--index", type=int, default=None, help="1-based shard index to run.")
@click.option("-t", "--total", type=int, default=None, help="Total number of shards.")
@_strategy_option
@click.option(
    "--merge",
    "merge_now",
    is_flag=True,
    help="Merge coverage after this shard even if others have not reported.",
)
@click.option(
    "--coverage/--no-coverage",
    default=None,
    help="Store this shard's coverage (default from .autoshard.yml).",
)
@click.option(
    "--command",
    "command_text",
    default=None,
    help="Test command; {index} and {total} are substituted.",
)
def run_single_shard(**kwargs: Any) -> None:
    """Run one shard chosen by the caller (CI matrix jobs).

    Without --index/--total the shard comes from the AUTOSHARD_* environment
    or from the CI provider's parallel-job variables.
    """
    path: str = kwargs["path"]
    index: int | None = kwargs.get("index")
    total: int | None = kwargs.get("total")
    strategy_name: str | None = kwargs.get("strategy")
    merge_now: bool = kwargs.get("merge_now", False)
    coverage: bool | None = kwargs.get("coverage")
    command_text: str | None = kwargs.get("command_text")

    try:
        env_context = ShardContext.from_env(os.environ)
    except ShardConfigurationError as e:
        raise click.UsageError(str(e)) from e

    if index is None and total is None:
        descriptor: ShardDescriptor | None = None
        if env_context is not None and env_context.index is not None:
            descriptor = env_context.descriptor
        else:
            descriptor = detect_ci_context().shard_descriptor()
        if descriptor is None:
            raise click.UsageError("--index and --total are required outside a CI parallel job.")
        descriptor = _descriptor(descriptor.index, descriptor.total)
    elif index is None or total is None:
        raise click.UsageError("--index and --total must be used together.")
    else:
        descriptor = _descriptor(index, total)

    merge = merge_now or (env_context is not None and env_context.merge_coverage)

    ci_mode = _ci_mode()
    config = _load_validated_config(path)
    strategy = strategy_name or config.sharding.strategy
    coverage_enabled = config.coverage.enabled if coverage is None else coverage

    if not ci_mode:
        reporter.print_header(f"autoshard test — shard {descriptor}")

    context = ShardContext(
        total=descriptor.total,
        index=descriptor.index,
        merge_coverage=merge,
    )
    try:
        spawner = CommandSpawner(
            _test_command(config, command_text),
            cwd=config.root_path,
            env={ENV_STRATEGY: strategy},
        )
        exit_code = asyncio.run(_run_to_exit(spawner, context))
    except ShardConfigurationError as e:
        raise click.UsageError(str(e)) from e
    except OSError as e:
        reporter.print_error(f"Could not start test command: {e}")
        raise click.Abort from e

    merged = None
    if coverage_enabled:
        collector = _coverage_collector(config)
        try:
            _store_shard_coverage(config, collector, descriptor.index)
        except (CoverageFormatError, OSError) as e:
            reporter.print_warning(f"Could not store shard coverage: {e}")
        if merge or collector.is_all_shards_complete(descriptor.total):
            merged = _merge_coverage(
                collector,
                config.coverage.formats,
                cleanup=config.coverage.cleanup_shard_files,
            )

    if ci_mode:
        _emit_json(
            {
                "shard": str(descriptor),
                "exit_code": exit_code,
                "success": exit_code == 0,
                "coverage_merged": merged is not None,
            }
        )
    elif merged is not None:
        reporter.print_coverage_summary(merged)

    if exit_code != 0:
        if not ci_mode:
            reporter.print_error(f"Shard {descriptor} failed with exit code {exit_code}")
        raise click.Abort

    if not ci_mode:
        reporter.print_success(f"Shard {descriptor} passed")


@cli.command()
@_path_option
@click.option("-i", "--index", type=int, required=True, help="1-based shard index.")
@click.option("-t", "--total", type=int, required=True, help="Total number of shards.")
@_strategy_option
def select(path: str, index: int, total: int, strategy: str | None) -> None:
    """Print the tests assigned to one shard, one per line."""
    descriptor = _descriptor(index, total)
    config = _load_validated_config(path)
    tests = _collect_tests(config)
    selected = _strategy(config, strategy).distribute(tests, descriptor)

    if _ci_mode():
        _emit_json({"shard": str(descriptor), "total_tests": len(tests), "tests": selected})
        return
    for test in selected:
        click.echo(test)


@cli.command()
@_path_option
@click.option("-s", "--source", default=None, help="Directory with shard coverage files.")
@click.option("-o", "--output", default=None, help="Directory for the merged coverage.")
@click.option(
    "-f",
    "--format",
    "formats",
    multiple=True,
    type=click.Choice(REPORT_FORMATS),
    help="Summary report format (repeatable; default from .autoshard.yml).",
)
@click.option("--cleanup", is_flag=True, help="Delete shard files after merging.")
def merge(
    path: str,
    source: str | None,
    output: str | None,
    formats: tuple[str, ...],
    *,
    cleanup: bool,
) -> None:
    """Merge shard coverage files into one report."""
    ci_mode = _ci_mode()
    if not ci_mode:
        reporter.print_header("Merging coverage")

    config = _load_validated_config(path)
    collector = CoverageCollector(
        config.resolve(source or config.coverage.shard_dir),
        config.resolve(output or config.coverage.final_dir),
    )
    shard_count = collector.get_shard_count()
    merged = _merge_coverage(
        collector,
        list(formats) or config.coverage.formats,
        cleanup=cleanup or config.coverage.cleanup_shard_files,
    )

    if ci_mode:
        _emit_json(
            {
                "shards": shard_count,
                "files": len(merged.files),
                "line_coverage": round(merged.overall_line_coverage, 2),
                "function_coverage": round(merged.overall_function_coverage, 2),
                "branch_coverage": round(merged.overall_branch_coverage, 2),
                "output": str(collector.final_dir),
            }
        )
        return

    reporter.print_coverage_summary(merged)
    reporter.print_success(f"Merged coverage from {shard_count} shards")
    reporter.print_info(f"Output: {collector.final_dir}")


@cli.command()
@_path_option
@click.option(
    "-n",
    "--shards",
    "total",
    type=click.IntRange(min=1),
    default=None,
    help="Preview the distribution for this shard count (default: recommended).",
)
@_strategy_option
def analyze(path: str, total: int | None, strategy: str | None) -> None:
    """Analyze the test suite and recommend a shard count."""
    ci_mode = _ci_mode()
    if not ci_mode:
        reporter.print_header("Analyzing test distribution")

    config = _load_validated_config(path)
    tests = _collect_tests(config)
    sizes = [(test, file_size(config.root_path / test)) for test in tests]
    total_size = sum(size for _, size in sizes)
    recommended = recommend_shard_count(len(tests))
    preview_total = total or recommended

    assign = _strategy(config, strategy)
    preview = {
        index: assign.distribute(tests, ShardDescriptor(index=index, total=preview_total))
        for index in range(1, preview_total + 1)
    }
    largest = sorted(sizes, key=lambda item: item[1], reverse=True)[:MAX_LARGEST_FILES_DISPLAY]

    if ci_mode:
        _emit_json(
            {
                "test_count": len(tests),
                "total_size": total_size,
                "cpu_count": os.cpu_count() or 1,
                "recommended_shards": recommended,
                "distribution": {str(i): len(selected) for i, selected in preview.items()},
            }
        )
        return

    if not tests:
        reporter.print_warning("No tests found")
        return
    reporter.print_analysis(len(tests), total_size, recommended, largest, preview)


@cli.command()
@_path_option
@click.option(
    "-t",
    "--total",
    type=click.IntRange(min=1),
    default=None,
    help="Total number of shards (default: from config or the status table).",
)
def status(path: str, total: int | None) -> None:
    """Show the shard status table of the current or last run."""
    config = _load_validated_config(path)
    directory = config.coordination_dir()
    records = load_status_table(directory / STATUS_FILE)

    total = total or config.sharding.total or max(records, default=0)
    if not total:
        if _ci_mode():
            _emit_json({"directory": str(directory), "shards": {}})
        else:
            reporter.print_info(f"No shard run found in {directory}")
        return

    coordinator = ShardCoordinator(directory, total)
    aggregate = coordinator.get_aggregate_status()

    if _ci_mode():
        _emit_json(
            {
                "directory": str(directory),
                "total": total,
                "aggregate": aggregate.to_dict(),
                "settled": aggregate.is_settled,
                "converged": aggregate.is_converged(total),
                "shards": {str(k): v.to_dict() for k, v in sorted(records.items())},
            }
        )
        return
    reporter.print_shard_status(aggregate, records, total)


@cli.command()
@_path_option
def clean(path: str) -> None:
    """Remove coverage directories and the coordination directory."""
    config = _load_validated_config(path)
    targets = [
        config.resolve(config.coverage.shard_dir),
        config.resolve(config.coverage.final_dir),
        config.coordination_dir(),
    ]

    failed = False
    for target in targets:
        if not target.exists():
            continue
        try:
            shutil.rmtree(target)
        except OSError as e:
            failed = True
            reporter.print_warning(f"Could not remove {target}: {e}")
        else:
            reporter.print_success(f"Removed {target}")

    if failed:
        raise click.Abort
    reporter.print_success("Cleanup complete!")


@cli.command()
def examples() -> None:
    """Show usage examples."""
    out = reporter.console
    reporter.print_header("autoshard examples")

    out.print("[bold]Local runs:[/bold]")
    out.print("[dim]  # Detect the shard count and run all shards[/dim]")
    out.print("  $ autoshard run\n")
    out.print("[dim]  # Eight shards, at most two at a time, balanced by file size[/dim]")
    out.print("  $ autoshard run --shards 8 --parallel 2 --strategy size\n")

    out.print("[bold]CI matrix:[/bold]")
    out.print("[dim]  # GitHub Actions[/dim]")
    out.print("  $ autoshard test --index ${{ matrix.shard }} --total ${{ matrix.total }}\n")
    out.print("[dim]  # GitLab CI parallel (CI_NODE_INDEX/CI_NODE_TOTAL are read)[/dim]")
    out.print("  $ autoshard test\n")

    out.print("[bold]Plain pytest:[/bold]")
    out.print("  $ pytest -p autoshard.pytest_plugin --shard-index 2 --shard-total 4\n")

    out.print("[bold]Coverage:[/bold]")
    out.print("[dim]  # .autoshard.yml[/dim]")
    out.print("  coverage:")
    out.print("    enabled: true")
    out.print(
        "  tests:\n    command: pytest -p autoshard.pytest_plugin --cov "
        "--cov-report=json:.autoshard/coverage/raw-{index}.json\n"
    )
    out.print("[dim]  # Merge shard coverage after all CI jobs finished[/dim]")
    out.print("  $ autoshard merge --format text --format json-summary\n")

    out.print("[bold]Analysis and cleanup:[/bold]")
    out.print("  $ autoshard analyze")
    out.print("  $ autoshard status")
    out.print("  $ autoshard clean\n")
