"""Merge per-shard coverage reports into one report."""

from __future__ import annotations

from typing import TYPE_CHECKING

from autoshard.coverage.models import (
    BranchCoverage,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

if TYPE_CHECKING:
    from collections.abc import Iterable


def merge_coverage_reports(reports: Iterable[CoverageReport]) -> CoverageReport:
    """Merge shard reports at the unified model level.

    Line and function execution counts take the maximum over shards, so a
    line executed by any shard counts as covered.  Branch hits are summed.
    """
    lines: dict[str, dict[int, int]] = {}
    functions: dict[str, dict[tuple[str, int], int]] = {}
    branches: dict[str, dict[tuple[int, int], int]] = {}

    for report in reports:
        for path, file_cov in report.files.items():
            file_lines = lines.setdefault(path, {})
            for ln in file_cov.lines:
                file_lines[ln.line_number] = max(
                    file_lines.get(ln.line_number, 0), ln.execution_count
                )

            file_functions = functions.setdefault(path, {})
            for fn in file_cov.functions:
                key = (fn.name, fn.line_number)
                file_functions[key] = max(file_functions.get(key, 0), fn.execution_count)

            file_branches = branches.setdefault(path, {})
            for br in file_cov.branches:
                key = (br.line_number, br.branch_id)
                file_branches[key] = file_branches.get(key, 0) + br.hits

    merged = CoverageReport()
    for path in sorted(lines):
        merged.files[path] = FileCoverage(
            file_path=path,
            lines=[LineCoverage(line, count) for line, count in sorted(lines[path].items())],
            functions=[
                FunctionCoverage(name, line, count)
                for (name, line), count in sorted(functions[path].items(), key=_function_order)
            ],
            branches=[
                BranchCoverage(line, branch_id, hits)
                for (line, branch_id), hits in sorted(branches[path].items())
            ],
        )
    return merged


def _function_order(item: tuple[tuple[str, int], int]) -> tuple[int, str]:
    (name, line), _ = item
    return line, name
