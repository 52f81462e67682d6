"""Read coverage.py JSON reports into the unified model.

Coverage.py JSON format (``coverage json``)::

    {
      "meta": {"version": "7.x.x", "branch_coverage": true, ...},
      "files": {
        "src/example.py": {
          "executed_lines": [1, 2, 5, 6],
          "missing_lines": [3, 4],
          "executed_branches": [[2, 5], [5, 6]],
          "missing_branches": [[2, 3]],
          "functions": {"main": {"executed_lines": [5, 6], "missing_lines": []}}
        }
      },
      "totals": {...}
    }

Branch data is only present when coverage ran with ``--branch``; function
data only with coverage.py 7.5 or newer.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from autoshard.coverage.models import (
    BranchCoverage,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_ARC_LENGTH = 2


class CoverageFormatError(ValueError):
    """Raised when a coverage file cannot be read or understood."""


def parse_coverage_py_json(path: Path) -> CoverageReport:
    """Parse the coverage.py JSON report at *path*.

    Raises:
        CoverageFormatError: If the file is unreadable or not a coverage.py
            JSON report.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        msg = f"Failed to read coverage file {path}: {exc}"
        raise CoverageFormatError(msg) from exc

    files_data = data.get("files") if isinstance(data, dict) else None
    if not isinstance(files_data, dict):
        msg = f"{path} is not a coverage.py JSON report"
        raise CoverageFormatError(msg)

    report = CoverageReport()
    for file_path, file_data in files_data.items():
        if isinstance(file_data, dict):
            report.files[file_path] = _parse_file(file_path, file_data)
    logger.debug("Parsed coverage for %d files from %s", len(report.files), path)
    return report


def _parse_file(file_path: str, data: dict[str, Any]) -> FileCoverage:
    executed = set(data.get("executed_lines", []))
    missing = set(data.get("missing_lines", []))
    lines = [
        LineCoverage(line_number=line, execution_count=1 if line in executed else 0)
        for line in sorted(executed | missing)
    ]
    return FileCoverage(
        file_path=file_path,
        lines=lines,
        functions=_parse_functions(data.get("functions", {})),
        branches=_parse_branches(data),
    )


def _parse_functions(functions_data: Any) -> list[FunctionCoverage]:
    if not isinstance(functions_data, dict):
        return []

    functions = []
    for name, info in functions_data.items():
        # "" holds module-level code
        if not name or not isinstance(info, dict):
            continue
        executed = info.get("executed_lines", [])
        all_lines = [*executed, *info.get("missing_lines", [])]
        if not all_lines:
            continue
        functions.append(
            FunctionCoverage(
                name=name,
                line_number=min(all_lines),
                execution_count=1 if executed else 0,
            )
        )
    return functions


def _parse_branches(data: dict[str, Any]) -> list[BranchCoverage]:
    outcomes: dict[int, dict[int, int]] = {}
    for key, hits in (("executed_branches", 1), ("missing_branches", 0)):
        for arc in data.get(key, []):
            if isinstance(arc, list) and len(arc) >= _ARC_LENGTH:
                source, target = arc[0], arc[1]
                outcomes.setdefault(source, {})[target] = hits

    branches = []
    for line, targets in sorted(outcomes.items()):
        for branch_id, target in enumerate(sorted(targets)):
            branches.append(
                BranchCoverage(line_number=line, branch_id=branch_id, hits=targets[target])
            )
    return branches
