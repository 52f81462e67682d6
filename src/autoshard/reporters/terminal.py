"""Terminal reporter with rich output formatting."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from autoshard.coordination.models import AggregateStatus, ShardRecord
    from autoshard.coordination.runner import RunSummary
    from autoshard.coverage.models import CoverageReport

console = Console()


_GOOD_COVERAGE = 80.0
_FAIR_COVERAGE = 50.0
_SECONDS_PER_MINUTE = 60.0
_BYTES_PER_KIB = 1024

_STATUS_STYLES = {
    "pending": "dim",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
}


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string."""
    if seconds >= _SECONDS_PER_MINUTE:
        return f"{seconds / _SECONDS_PER_MINUTE:.1f}m"
    return f"{seconds:.1f}s"


def _format_size(size: float) -> str:
    if size >= _BYTES_PER_KIB:
        return f"{size / _BYTES_PER_KIB:.1f} KiB"
    return f"{size:.0f} B"


def _format_ids(ids: Sequence[int]) -> str:
    return ", ".join(str(i) for i in ids) if ids else "-"


class CLIReporter:
    """Rich terminal output for shard runs, status and coverage."""

    def __init__(self) -> None:
        """Initialize the CLI reporter."""
        self.console = console

    def print_header(self, title: str) -> None:
        """Print a bold header."""
        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")

    def print_success(self, message: str) -> None:
        """Print a success message."""
        self.console.print(f"[green]✓[/green] {message}")

    def print_error(self, message: str) -> None:
        """Print an error message."""
        self.console.print(f"[red]✗[/red] {message}")

    def print_warning(self, message: str) -> None:
        """Print a warning message."""
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def print_info(self, message: str) -> None:
        """Print an info message."""
        self.console.print(f"[dim]{message}[/dim]")

    # ── Shard runs ─────────────────────────────────────────────────────

    def print_run_banner(self, total: int, max_parallel: int, strategy: str) -> None:
        """Print the banner shown before an auto-shard run."""
        self.console.print()
        self.console.print(
            Panel(
                f"[bold white]{total} shards[/bold white]  "
                f"[dim]parallel {max_parallel} · strategy {strategy}[/dim]",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    def print_run_summary(self, summary: RunSummary, duration_s: float) -> None:
        """Print the outcome of an auto-shard run."""
        table = Table(title="Shard Run", title_style="bold cyan", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Shards", str(summary.total_shards))
        table.add_row("[green]Completed[/green]", _format_ids(summary.completed))
        table.add_row("[red]Failed[/red]", _format_ids(summary.failed))
        table.add_row("[yellow]Unresolved[/yellow]", _format_ids(summary.unresolved))
        table.add_row("Processes started", str(sum(summary.attempts.values())))
        table.add_row("Peak parallelism", str(summary.max_active))
        table.add_row("Duration", _format_duration(duration_s))
        self.console.print(table)

    def print_shard_status(
        self,
        aggregate: AggregateStatus,
        records: Mapping[int, ShardRecord],
        total: int,
    ) -> None:
        """Print the coordinator's status table for shard ids ``1..total``."""
        table = Table(title="Shard Status", title_style="bold cyan")
        table.add_column("Shard", justify="right", style="bold")
        table.add_column("Status")
        table.add_column("PID", justify="right")
        table.add_column("Exit", justify="right")

        for shard_id in range(1, total + 1):
            record = records.get(shard_id)
            status = record.status.value if record else "pending"
            style = _STATUS_STYLES.get(status, "")
            table.add_row(
                f"{shard_id}/{total}",
                f"[{style}]{status}[/{style}]",
                str(record.owner_pid) if record and record.owner_pid is not None else "",
                str(record.exit_code) if record and record.exit_code is not None else "",
            )

        self.console.print(table)
        self.console.print(
            f"  [green]{aggregate.completed} completed[/green]  "
            f"[cyan]{aggregate.running} running[/cyan]  "
            f"[dim]{aggregate.pending} pending[/dim]  "
            f"[red]{aggregate.failed} failed[/red]"
        )

    # ── Analysis ───────────────────────────────────────────────────────

    def print_analysis(
        self,
        test_count: int,
        total_size: int,
        recommended_shards: int,
        largest: Sequence[tuple[str, int]],
        preview: Mapping[int, Sequence[str]],
    ) -> None:
        """Print a test-suite analysis with the largest files and a shard preview."""
        self.console.print(f"  Test files:          [bold]{test_count}[/bold]")
        self.console.print(f"  Total size:          {_format_size(total_size)}")
        if test_count:
            self.console.print(
                f"  Average size:        {_format_size(total_size / test_count)}"
            )
        self.console.print(f"  Recommended shards:  [bold green]{recommended_shards}[/bold green]")

        if largest:
            self.console.print("\n[bold]Largest test files:[/bold]")
            for rank, (path, size) in enumerate(largest, start=1):
                self.console.print(f"  {rank}. {path} [dim]({_format_size(size)})[/dim]")

        if not preview:
            return
        table = Table(title="Shard Preview", title_style="bold cyan")
        table.add_column("Shard", justify="right", style="bold")
        table.add_column("Tests", justify="right")
        table.add_column("First tests")
        for index, tests in preview.items():
            table.add_row(f"{index}/{len(preview)}", str(len(tests)), ", ".join(tests[:3]))
        self.console.print(table)

    # ── Coverage ───────────────────────────────────────────────────────

    def _get_coverage_color(self, percentage: float) -> str:
        if percentage >= _GOOD_COVERAGE:
            return "green"
        if percentage >= _FAIR_COVERAGE:
            return "yellow"
        return "red"

    def print_coverage_summary(self, report: CoverageReport) -> None:
        """Print overall merged coverage."""
        table = Table(title="Merged Coverage", title_style="bold cyan")
        table.add_column("Metric", style="bold")
        table.add_column("Covered", justify="right")
        table.add_column("Coverage", justify="right")

        for label, totals in (
            ("Lines", report.line_totals),
            ("Functions", report.function_totals),
            ("Branches", report.branch_totals),
        ):
            color = self._get_coverage_color(totals.percentage)
            table.add_row(
                label,
                f"{totals.covered}/{totals.total}",
                f"[{color}]{totals.percentage:.1f}%[/{color}]",
            )
        self.console.print(table)
        self.console.print(f"  [dim]{len(report.files)} files[/dim]")


reporter = CLIReporter()
