"""Unified coverage model shared by all shards.

Every shard's native coverage output is converted into a
:class:`CoverageReport` before it is stored, so merging never has to know
which tool produced the data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LineCoverage:
    """Execution count of one executable line."""

    line_number: int
    execution_count: int

    @property
    def is_covered(self) -> bool:
        """Return True if this line was executed at least once."""
        return self.execution_count > 0


@dataclass
class FunctionCoverage:
    """Execution count of one function."""

    name: str
    line_number: int
    execution_count: int

    @property
    def is_covered(self) -> bool:
        """Return True if this function was entered at least once."""
        return self.execution_count > 0


@dataclass
class BranchCoverage:
    """How often one branch outcome was taken.

    ``branch_id`` distinguishes the outcomes that start at ``line_number``.
    """

    line_number: int
    branch_id: int
    hits: int

    @property
    def is_covered(self) -> bool:
        """Return True if the branch was taken at least once."""
        return self.hits > 0


@dataclass
class CoverageTotals:
    """Covered and total item counts for one coverage dimension."""

    covered: int = 0
    total: int = 0

    @property
    def percentage(self) -> float:
        """Return coverage as a percentage (0.0-100.0); empty means 100."""
        if self.total == 0:
            return 100.0
        return (self.covered / self.total) * 100.0

    def __add__(self, other: CoverageTotals) -> CoverageTotals:
        return CoverageTotals(self.covered + other.covered, self.total + other.total)


@dataclass
class FileCoverage:
    """Coverage data for a single source file."""

    file_path: str
    lines: list[LineCoverage] = field(default_factory=list)
    functions: list[FunctionCoverage] = field(default_factory=list)
    branches: list[BranchCoverage] = field(default_factory=list)

    @property
    def line_totals(self) -> CoverageTotals:
        return CoverageTotals(sum(1 for ln in self.lines if ln.is_covered), len(self.lines))

    @property
    def function_totals(self) -> CoverageTotals:
        return CoverageTotals(
            sum(1 for fn in self.functions if fn.is_covered), len(self.functions)
        )

    @property
    def branch_totals(self) -> CoverageTotals:
        return CoverageTotals(sum(1 for br in self.branches if br.is_covered), len(self.branches))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "lines": {str(ln.line_number): ln.execution_count for ln in self.lines},
            "functions": [
                {"name": fn.name, "line": fn.line_number, "count": fn.execution_count}
                for fn in self.functions
            ],
            "branches": [
                {"line": br.line_number, "id": br.branch_id, "hits": br.hits}
                for br in self.branches
            ],
        }

    @classmethod
    def from_dict(cls, file_path: str, data: dict[str, Any]) -> FileCoverage:
        """Build file coverage from its JSON form.

        Raises:
            KeyError, TypeError, ValueError: If the data is malformed.
        """
        return cls(
            file_path=file_path,
            lines=[
                LineCoverage(line_number=int(line), execution_count=int(count))
                for line, count in data.get("lines", {}).items()
            ],
            functions=[
                FunctionCoverage(
                    name=str(fn["name"]),
                    line_number=int(fn["line"]),
                    execution_count=int(fn["count"]),
                )
                for fn in data.get("functions", [])
            ],
            branches=[
                BranchCoverage(
                    line_number=int(br["line"]),
                    branch_id=int(br["id"]),
                    hits=int(br["hits"]),
                )
                for br in data.get("branches", [])
            ],
        )


@dataclass
class CoverageReport:
    """Coverage across all files, keyed by file path."""

    files: dict[str, FileCoverage] = field(default_factory=dict)

    def _totals(self, attr: str) -> CoverageTotals:
        totals = CoverageTotals()
        for file_cov in self.files.values():
            totals += getattr(file_cov, attr)
        return totals

    @property
    def line_totals(self) -> CoverageTotals:
        return self._totals("line_totals")

    @property
    def function_totals(self) -> CoverageTotals:
        return self._totals("function_totals")

    @property
    def branch_totals(self) -> CoverageTotals:
        return self._totals("branch_totals")

    @property
    def overall_line_coverage(self) -> float:
        """Return overall line coverage percentage across all files."""
        return self.line_totals.percentage

    @property
    def overall_function_coverage(self) -> float:
        """Return overall function coverage percentage across all files."""
        return self.function_totals.percentage

    @property
    def overall_branch_coverage(self) -> float:
        """Return overall branch coverage percentage across all files."""
        return self.branch_totals.percentage

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {"files": {path: cov.to_dict() for path, cov in sorted(self.files.items())}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoverageReport:
        """Build a report from its JSON form.

        Raises:
            KeyError, TypeError, ValueError: If the data is malformed.
        """
        files = data.get("files", {})
        if not isinstance(files, dict):
            msg = "coverage 'files' must be an object"
            raise TypeError(msg)
        return cls(
            files={path: FileCoverage.from_dict(path, cov) for path, cov in files.items()}
        )
