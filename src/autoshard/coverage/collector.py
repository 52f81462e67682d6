"""Per-shard coverage storage and the final merge.

Each shard stores its converted coverage as ``coverage-shard-<index>.json``
in a shared directory.  Once every shard has reported, the files are merged
into ``coverage-final.json`` plus any requested summary reports.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING

from autoshard.coverage.merger import merge_coverage_reports
from autoshard.coverage.models import CoverageReport
from autoshard.coverage.reports import build_json_summary, render_text_summary
from autoshard.memory.store import write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

SHARD_FILE_GLOB = "coverage-shard-*.json"
FINAL_REPORT_FILE = "coverage-final.json"
TEXT_SUMMARY_FILE = "coverage-summary.txt"
JSON_SUMMARY_FILE = "coverage-summary.json"

REPORT_FORMATS: tuple[str, ...] = ("text", "json-summary")
"""Summary formats accepted by :meth:`CoverageCollector.merge`."""

_SHARD_FILE_RE = re.compile(r"^coverage-shard-(\d+)\.json$")


class CoverageMergeError(Exception):
    """Raised when there is no shard coverage to merge."""


def _shard_number(path: Path) -> int:
    match = _SHARD_FILE_RE.match(path.name)
    return int(match.group(1)) if match else 0


class CoverageCollector:
    """Stores shard coverage and merges it once all shards are in.

    Args:
        shard_dir: Directory holding the per-shard coverage files.
        final_dir: Directory receiving the merged report.
    """

    def __init__(self, shard_dir: Path, final_dir: Path) -> None:
        self._shard_dir = shard_dir
        self._final_dir = final_dir

    @property
    def shard_dir(self) -> Path:
        return self._shard_dir

    @property
    def final_dir(self) -> Path:
        return self._final_dir

    def shard_file(self, shard_index: int) -> Path:
        """Location of the coverage file for *shard_index*."""
        return self._shard_dir / f"coverage-shard-{shard_index}.json"

    def collect_shard_coverage(self, shard_index: int, report: CoverageReport) -> Path:
        """Store *report* as the coverage of *shard_index*.

        Returns:
            Path of the written shard file.
        """
        path = self.shard_file(shard_index)
        write_json_atomic(path, report.to_dict())
        logger.debug("Stored coverage of shard %d at %s", shard_index, path)
        return path

    def shard_files(self) -> list[Path]:
        """Existing shard coverage files, ordered by shard index."""
        if not self._shard_dir.is_dir():
            return []
        files = [p for p in self._shard_dir.glob(SHARD_FILE_GLOB) if _SHARD_FILE_RE.match(p.name)]
        return sorted(files, key=_shard_number)

    def get_shard_count(self) -> int:
        """Number of shards that have stored coverage."""
        return len(self.shard_files())

    def is_all_shards_complete(self, expected_shards: int) -> bool:
        """True when exactly *expected_shards* shard files are present."""
        return self.get_shard_count() == expected_shards

    def load_shard_reports(self) -> list[CoverageReport]:
        """Read every shard file, skipping unreadable ones with a warning."""
        reports = []
        for path in self.shard_files():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise TypeError("expected a JSON object")
                reports.append(CoverageReport.from_dict(data))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Error reading %s: %s", path, exc)
        return reports

    def merge(
        self,
        formats: Sequence[str] = ("text",),
        *,
        cleanup_shard_files: bool = False,
    ) -> CoverageReport:
        """Merge all shard files and write the final reports.

        Args:
            formats: Summary formats to write in addition to
                ``coverage-final.json`` (see :data:`REPORT_FORMATS`).
            cleanup_shard_files: Delete the shard files after merging.

        Returns:
            The merged report.

        Raises:
            CoverageMergeError: If no shard coverage file exists.
            OSError: If the final reports cannot be written.
        """
        if not self.shard_files():
            msg = f"No shard coverage files found to merge in {self._shard_dir}"
            raise CoverageMergeError(msg)

        reports = self.load_shard_reports()
        merged = merge_coverage_reports(reports)
        logger.info("Merged coverage from %d shard files", len(reports))

        write_json_atomic(self._final_dir / FINAL_REPORT_FILE, merged.to_dict())
        for report_format in formats:
            self._write_report(report_format, merged)

        if cleanup_shard_files:
            self.cleanup_shard_files()
        return merged

    def _write_report(self, report_format: str, report: CoverageReport) -> None:
        if report_format == "text":
            path = self._final_dir / TEXT_SUMMARY_FILE
            path.write_text(render_text_summary(report), encoding="utf-8")
        elif report_format == "json-summary":
            write_json_atomic(self._final_dir / JSON_SUMMARY_FILE, build_json_summary(report))
        else:
            logger.warning("Unknown coverage report format %r, skipping", report_format)

    def cleanup_shard_files(self) -> int:
        """Delete all shard coverage files.

        Returns:
            Number of files removed.
        """
        removed = 0
        for path in self.shard_files():
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Error deleting %s: %s", path, exc)
            else:
                removed += 1
        return removed
