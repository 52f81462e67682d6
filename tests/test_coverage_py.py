"""Tests for autoshard.coverage.coverage_py."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest

from autoshard.coverage.coverage_py import CoverageFormatError, parse_coverage_py_json
from autoshard.coverage.models import BranchCoverage, FunctionCoverage, LineCoverage

if TYPE_CHECKING:
    from pathlib import Path


def _write(tmp_path: Path, data: Any) -> Path:
    path = tmp_path / "coverage.json"
    path.write_text(json.dumps(data))
    return path


SAMPLE = {
    "meta": {"version": "7.6.0", "branch_coverage": True},
    "files": {
        "src/example.py": {
            "executed_lines": [1, 2, 5, 6],
            "missing_lines": [3, 4],
            "executed_branches": [[2, 5], [5, 6]],
            "missing_branches": [[2, 3], [5, -1]],
            "functions": {
                "": {"executed_lines": [1], "missing_lines": []},
                "main": {"executed_lines": [5, 6], "missing_lines": []},
                "helper": {"executed_lines": [], "missing_lines": [3, 4]},
            },
        }
    },
    "totals": {},
}


class TestParseCoveragePyJson:
    def test_lines(self, tmp_path: Path) -> None:
        report = parse_coverage_py_json(_write(tmp_path, SAMPLE))
        lines = report.files["src/example.py"].lines
        assert lines == [
            LineCoverage(1, 1),
            LineCoverage(2, 1),
            LineCoverage(3, 0),
            LineCoverage(4, 0),
            LineCoverage(5, 1),
            LineCoverage(6, 1),
        ]

    def test_functions_skip_module_level(self, tmp_path: Path) -> None:
        report = parse_coverage_py_json(_write(tmp_path, SAMPLE))
        functions = report.files["src/example.py"].functions
        assert functions == [FunctionCoverage("main", 5, 1), FunctionCoverage("helper", 3, 0)]

    def test_branches_numbered_by_target(self, tmp_path: Path) -> None:
        report = parse_coverage_py_json(_write(tmp_path, SAMPLE))
        assert report.files["src/example.py"].branches == [
            BranchCoverage(2, 0, 0),
            BranchCoverage(2, 1, 1),
            BranchCoverage(5, 0, 0),
            BranchCoverage(5, 1, 1),
        ]

    def test_without_branch_or_function_data(self, tmp_path: Path) -> None:
        data = {"files": {"a.py": {"executed_lines": [1], "missing_lines": []}}}
        file_cov = parse_coverage_py_json(_write(tmp_path, data)).files["a.py"]
        assert file_cov.branches == []
        assert file_cov.functions == []
        assert file_cov.line_totals.percentage == 100.0

    @pytest.mark.parametrize("data", [[], {"meta": {}}, {"files": []}])
    def test_not_a_coverage_report(self, tmp_path: Path, data: Any) -> None:
        with pytest.raises(CoverageFormatError, match="not a coverage.py JSON report"):
            parse_coverage_py_json(_write(tmp_path, data))

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "coverage.json"
        path.write_text("{")
        with pytest.raises(CoverageFormatError, match="Failed to read"):
            parse_coverage_py_json(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(CoverageFormatError):
            parse_coverage_py_json(tmp_path / "absent.json")
