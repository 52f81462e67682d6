"""Coverage collection and merging across shards."""

from autoshard.coverage.collector import REPORT_FORMATS, CoverageCollector, CoverageMergeError
from autoshard.coverage.coverage_py import CoverageFormatError, parse_coverage_py_json
from autoshard.coverage.merger import merge_coverage_reports
from autoshard.coverage.models import (
    BranchCoverage,
    CoverageReport,
    CoverageTotals,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

__all__ = [
    "REPORT_FORMATS",
    "BranchCoverage",
    "CoverageCollector",
    "CoverageFormatError",
    "CoverageMergeError",
    "CoverageReport",
    "CoverageTotals",
    "FileCoverage",
    "FunctionCoverage",
    "LineCoverage",
    "merge_coverage_reports",
    "parse_coverage_py_json",
]
