"""Tests for autoshard.memory.duration_history."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from unittest.mock import patch

from autoshard.memory.duration_history import DurationHistory

if TYPE_CHECKING:
    from pathlib import Path


def _write_history(root: Path, content: str) -> None:
    state = root / ".autoshard"
    state.mkdir(exist_ok=True)
    (state / "durations.json").write_text(content)


class TestDurationHistory:
    def test_starts_empty(self, tmp_path: Path) -> None:
        history = DurationHistory(tmp_path)
        history.load()
        assert len(history) == 0
        assert history.get("t", 7.0) == 7.0

    def test_record_writes_through(self, tmp_path: Path) -> None:
        DurationHistory(tmp_path).record("tests/test_a.py", 120.5)

        data = json.loads((tmp_path / ".autoshard" / "durations.json").read_text())
        assert data == {"tests/test_a.py": 120.5}

    def test_record_many_saves_once(self, tmp_path: Path) -> None:
        history = DurationHistory(tmp_path)
        with patch.object(history, "save", return_value=True) as save:
            assert history.record_many({"a": 1.0, "b": 2.0})
        save.assert_called_once()
        assert history.as_dict() == {"a": 1.0, "b": 2.0}

    def test_negative_durations_clamped(self, tmp_path: Path) -> None:
        history = DurationHistory(tmp_path)
        history.record("a", -5)
        assert history.get("a", 1.0) == 0.0

    def test_load_replaces_memory(self, tmp_path: Path) -> None:
        DurationHistory(tmp_path).record("a", 10.0)
        history = DurationHistory(tmp_path)
        history.load()
        assert "a" in history
        assert history.as_dict() == {"a": 10.0}

    def test_invalid_entries_ignored(self, tmp_path: Path) -> None:
        _write_history(tmp_path, json.dumps({"a": 5, "b": "slow", "c": -1, "d": True}))
        history = DurationHistory(tmp_path)
        history.load()
        assert history.as_dict() == {"a": 5.0}

    def test_non_finite_entries_ignored(self, tmp_path: Path) -> None:
        _write_history(tmp_path, '{"a": NaN, "b": Infinity, "c": 5, "d": -Infinity}')
        history = DurationHistory(tmp_path)
        history.load()
        assert history.as_dict() == {"c": 5.0}

    def test_non_finite_records_ignored(self, tmp_path: Path) -> None:
        history = DurationHistory(tmp_path)
        history.record("a", float("nan"))
        history.record_many({"b": float("inf"), "c": 3.0})

        assert history.as_dict() == {"c": 3.0}
        data = json.loads((tmp_path / ".autoshard" / "durations.json").read_text())
        assert data == {"c": 3.0}

    def test_corrupt_file_reads_as_empty(self, tmp_path: Path) -> None:
        _write_history(tmp_path, "not json")
        history = DurationHistory(tmp_path)
        history.load()
        assert len(history) == 0

    def test_save_failure_is_not_raised(self, tmp_path: Path) -> None:
        history = DurationHistory(tmp_path)
        with patch("autoshard.memory.store.write_json_atomic", side_effect=OSError("ro")):
            history.record("a", 1.0)
            assert not history.save()
        assert history.get("a", 0.0) == 1.0

    def test_custom_file_name(self, tmp_path: Path) -> None:
        history = DurationHistory(tmp_path, "timings.json")
        assert history.file_path == tmp_path / ".autoshard" / "timings.json"
