"""Coverage summary reports written next to the merged coverage file."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from autoshard.coverage.models import CoverageReport, CoverageTotals

_REPORT_WIDTH = 120


def _pct(totals: CoverageTotals) -> str:
    return f"{totals.percentage:.1f}%"


def build_summary_table(report: CoverageReport) -> Table:
    """Build a per-file coverage table with a totals row."""
    table = Table(title="Coverage Summary", show_footer=True)
    table.add_column("File", footer="All files")
    table.add_column("Lines", justify="right", footer=_pct(report.line_totals))
    table.add_column("Functions", justify="right", footer=_pct(report.function_totals))
    table.add_column("Branches", justify="right", footer=_pct(report.branch_totals))

    for path, file_cov in sorted(report.files.items()):
        table.add_row(
            path,
            _pct(file_cov.line_totals),
            _pct(file_cov.function_totals),
            _pct(file_cov.branch_totals),
        )
    return table


def render_text_summary(report: CoverageReport) -> str:
    """Render the summary table as plain text."""
    buffer = io.StringIO()
    console = Console(file=buffer, width=_REPORT_WIDTH, color_system=None, force_terminal=False)
    console.print(build_summary_table(report))
    return buffer.getvalue()


def build_json_summary(report: CoverageReport) -> dict[str, Any]:
    """Per-file and total covered/total counts."""

    def entry(lines: CoverageTotals, functions: CoverageTotals, branches: CoverageTotals) -> dict:
        return {
            name: {"covered": t.covered, "total": t.total, "pct": round(t.percentage, 2)}
            for name, t in (("lines", lines), ("functions", functions), ("branches", branches))
        }

    summary: dict[str, Any] = {
        "total": entry(report.line_totals, report.function_totals, report.branch_totals)
    }
    for path, file_cov in sorted(report.files.items()):
        summary[path] = entry(
            file_cov.line_totals, file_cov.function_totals, file_cov.branch_totals
        )
    return summary
