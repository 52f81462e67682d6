"""Tests for autoshard.coverage.merger."""

from __future__ import annotations

from autoshard.coverage.merger import merge_coverage_reports
from autoshard.coverage.models import (
    BranchCoverage,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)


def _report(path: str, **kwargs: list) -> CoverageReport:
    return CoverageReport(files={path: FileCoverage(file_path=path, **kwargs)})


class TestMergeCoverageReports:
    def test_no_reports(self) -> None:
        assert merge_coverage_reports([]).files == {}

    def test_line_counts_take_maximum(self) -> None:
        first = _report("a.py", lines=[LineCoverage(1, 2), LineCoverage(2, 0)])
        second = _report("a.py", lines=[LineCoverage(2, 5), LineCoverage(3, 0)])

        merged = merge_coverage_reports([first, second]).files["a.py"]

        assert merged.lines == [LineCoverage(1, 2), LineCoverage(2, 5), LineCoverage(3, 0)]

    def test_line_covered_by_any_shard_is_covered(self) -> None:
        shards = [
            _report("a.py", lines=[LineCoverage(1, 1), LineCoverage(2, 0)]),
            _report("a.py", lines=[LineCoverage(1, 0), LineCoverage(2, 1)]),
        ]
        assert merge_coverage_reports(shards).overall_line_coverage == 100.0

    def test_function_counts_take_maximum(self) -> None:
        merged = merge_coverage_reports(
            [
                _report("a.py", functions=[FunctionCoverage("f", 3, 0)]),
                _report(
                    "a.py",
                    functions=[FunctionCoverage("f", 3, 4), FunctionCoverage("g", 1, 0)],
                ),
            ]
        ).files["a.py"]
        assert merged.functions == [FunctionCoverage("g", 1, 0), FunctionCoverage("f", 3, 4)]

    def test_branch_hits_are_summed(self) -> None:
        merged = merge_coverage_reports(
            [
                _report("a.py", branches=[BranchCoverage(5, 0, 1), BranchCoverage(5, 1, 0)]),
                _report("a.py", branches=[BranchCoverage(5, 0, 2)]),
            ]
        ).files["a.py"]
        assert merged.branches == [BranchCoverage(5, 0, 3), BranchCoverage(5, 1, 0)]

    def test_files_from_all_shards_sorted(self) -> None:
        merged = merge_coverage_reports(
            [_report("z.py", lines=[LineCoverage(1, 1)]), _report("b.py")]
        )
        assert list(merged.files) == ["b.py", "z.py"]

    def test_inputs_not_mutated(self) -> None:
        first = _report("a.py", lines=[LineCoverage(1, 1)])
        merge_coverage_reports([first, _report("a.py", lines=[LineCoverage(1, 9)])])
        assert first.files["a.py"].lines == [LineCoverage(1, 1)]
