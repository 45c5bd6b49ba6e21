"""Tests for npm_hookwatch.store module.

Covers atomic writes, corrupt-file recovery, findings dedup and delivery
marking (including across store instances, i.e. restarts), pending-task
bookkeeping, and the cursor file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from structlog.testing import capture_logs

from npm_hookwatch.models import Alert, AlertAction, Cursor, Finding, PendingTask
from npm_hookwatch.store import (
    CursorStore,
    FindingsStore,
    PendingStore,
    atomic_write_json,
    read_json,
)


def _write_json(path: Path, data: Any) -> None:
    """Write JSON data to a file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def _finding(package: str = "left-pad", version: str = "1.1.0", script: str = "postinstall") -> Finding:
    return Finding.from_alert(package, version, "1.0.0", Alert(script, AlertAction.ADDED, "curl x | sh"))


class TestAtomicWrite:
    """Tests for atomic_write_json and read_json."""

    def test_write_and_read(self, tmp_path: Path) -> None:
        """Written data reads back; parent directories are created."""
        path = tmp_path / "nested" / "data.json"
        atomic_write_json(path, [{"a": 1}])
        assert read_json(path, default=None) == [{"a": 1}]

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        """Only the target file remains after a write."""
        path = tmp_path / "data.json"
        atomic_write_json(path, {"x": 1})
        atomic_write_json(path, {"x": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]

    def test_failed_write_keeps_old_file(self, tmp_path: Path) -> None:
        """An unserialisable payload leaves the previous content intact."""
        path = tmp_path / "data.json"
        atomic_write_json(path, {"ok": True})
        with pytest.raises(TypeError):
            atomic_write_json(path, {"bad": object()})
        assert read_json(path, default=None) == {"ok": True}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]

    def test_missing_file_default(self, tmp_path: Path) -> None:
        """A missing file returns the default."""
        assert read_json(tmp_path / "nope.json", default=[]) == []

    def test_corrupt_file_default(self, tmp_path: Path) -> None:
        """A corrupt file returns the default."""
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        assert read_json(path, default=[]) == []


class TestFindingsStore:
    """Tests for FindingsStore."""

    @pytest.fixture()
    def store(self, tmp_path: Path) -> FindingsStore:
        return FindingsStore(tmp_path / "db.json")

    def test_add_newest_first(self, store: FindingsStore) -> None:
        """Findings are stored newest first."""
        assert store.add(_finding(version="1.0.0"))
        assert store.add(_finding(version="1.1.0"))
        assert [finding.version for finding in store.all()] == ["1.1.0", "1.0.0"]

    def test_duplicate_key_rejected(self, store: FindingsStore) -> None:
        """A second finding with the same key is not written."""
        assert store.add(_finding())
        assert not store.add(_finding())
        assert len(store.all()) == 1

    def test_same_version_other_script(self, store: FindingsStore) -> None:
        """Different scripts of one version are distinct findings."""
        assert store.add(_finding(script="preinstall"))
        assert store.add(_finding(script="postinstall"))
        assert len(store.keys()) == 2

    def test_dedup_survives_restart(self, store: FindingsStore) -> None:
        """A new store instance on the same file sees earlier findings."""
        store.add(_finding())
        reopened = FindingsStore(store.path)
        assert reopened.has(("left-pad", "1.1.0", "postinstall"))
        assert not reopened.add(_finding())

    def test_mark_delivered(self, store: FindingsStore) -> None:
        """mark_delivered flips only the matching finding."""
        store.add(_finding(script="preinstall"))
        store.add(_finding(script="postinstall"))
        assert store.mark_delivered("left-pad", "1.1.0", "postinstall")
        assert [finding.script_type for finding in store.undelivered()] == ["preinstall"]

    def test_mark_delivered_unknown(self, store: FindingsStore) -> None:
        """Marking an unknown finding returns False."""
        assert not store.mark_delivered("nope", "1.0.0", "install")

    def test_persisted_shape(self, store: FindingsStore) -> None:
        """The file is a JSON array of snake_case records."""
        store.add(_finding())
        data = json.loads(store.path.read_text(encoding="utf-8"))
        assert isinstance(data, list)
        assert data[0]["package_name"] == "left-pad"
        assert data[0]["delivered"] is False

    def test_invalid_records_skipped(self, tmp_path: Path) -> None:
        """Records missing required keys are ignored."""
        path = tmp_path / "db.json"
        _write_json(path, [{"package_name": "x"}, _finding().to_dict(), "junk"])
        assert len(FindingsStore(path).all()) == 1

    def test_corrupt_file_reads_empty(self, tmp_path: Path) -> None:
        """A corrupt findings file is treated as empty and rewritten on add."""
        path = tmp_path / "db.json"
        path.write_text("[{", encoding="utf-8")
        store = FindingsStore(path)
        assert store.all() == []
        assert store.add(_finding())
        assert len(FindingsStore(path).all()) == 1

    def test_undecodable_file_reads_empty(self, tmp_path: Path) -> None:
        """A file that is not valid UTF-8 is treated as empty, not raised."""
        path = tmp_path / "db.json"
        path.write_bytes(b"[\xff\xfe]")
        store = FindingsStore(path)
        with capture_logs() as logs:
            assert not store.has(("left-pad", "1.1.0", "postinstall"))
        assert [entry["event"] for entry in logs] == ["store_corrupt"]
        assert store.add(_finding())
        assert len(FindingsStore(path).all()) == 1


class TestPendingStore:
    """Tests for PendingStore."""

    @pytest.fixture()
    def store(self, tmp_path: Path) -> PendingStore:
        return PendingStore(tmp_path / "pending-db.json")

    def test_add_and_remove(self, store: PendingStore) -> None:
        """Tasks can be added and removed by name."""
        store.add(PendingTask("a"))
        store.add(PendingTask("b"))
        assert [task.package_name for task in store.all()] == ["b", "a"]
        assert store.remove("a")
        assert not store.remove("a")
        assert [task.package_name for task in store.all()] == ["b"]

    def test_add_replaces_same_name(self, store: PendingStore) -> None:
        """Re-adding a package keeps one entry, moved to the top."""
        store.add(PendingTask("a"))
        store.add(PendingTask("b"))
        store.add(PendingTask("a"))
        assert [task.package_name for task in store.all()] == ["a", "b"]

    def test_add_many(self, store: PendingStore) -> None:
        """add_many writes a batch newest first without duplicates."""
        store.add(PendingTask("old"))
        store.add_many([PendingTask("x"), PendingTask("y"), PendingTask("x")])
        names = [task.package_name for task in store.all()]
        assert sorted(names) == ["old", "x", "y"]
        assert names[-1] == "old"

    def test_add_many_empty(self, store: PendingStore) -> None:
        """An empty batch does not create the file."""
        store.add_many([])
        assert not store.path.exists()


class TestCursorStore:
    """Tests for CursorStore."""

    def test_missing(self, tmp_path: Path) -> None:
        """No file means no cursor."""
        assert CursorStore(tmp_path / "cursor.json").load() is None

    def test_round_trip_string_and_int(self, tmp_path: Path) -> None:
        """String and integer tokens are preserved as-is."""
        store = CursorStore(tmp_path / "cursor.json")
        store.save(Cursor("99-abc"))
        assert store.load() == Cursor("99-abc")
        store.save(Cursor(1234))
        assert store.load() == Cursor(1234)

    def test_invalid_token(self, tmp_path: Path) -> None:
        """Tokens of the wrong type are ignored."""
        path = tmp_path / "cursor.json"
        _write_json(path, {"sequence_token": True})
        assert CursorStore(path).load() is None
        _write_json(path, {"sequence_token": [1]})
        assert CursorStore(path).load() is None
