"""Crash-safe JSON persistence for findings, pending work and the feed cursor.

Every store keeps its data in one JSON file. Updates read the whole file,
mutate the in-memory copy, and rewrite the file atomically: the new content
is written to a temporary file in the same directory, flushed, and moved
over the old file with ``os.replace``. A crash mid-write leaves either the
old or the new file, never a truncated one.

Ownership: each file has exactly one writer, the monitor process that
created the store. Calls are synchronous and run on the event loop thread,
so writes from concurrent workers in that process never interleave.
Concurrent writers in other processes are not supported and are not
guarded against.

Public API:
    JsonListStore: Ordered JSON-array file with atomic rewrite
    FindingsStore: Newest-first findings log keyed by (package, version, script)
    PendingStore: Newest-first log of packages waiting to be scanned
    CursorStore: Single-object file holding the feed cursor
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

from npm_hookwatch.models import Cursor, Finding, FindingKey, PendingTask

logger = structlog.get_logger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` as JSON to ``path`` via a temporary file and rename.

    Raises:
        OSError: If the file cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path, default: Any) -> Any:
    """Read JSON from ``path``; return ``default`` if missing or corrupt."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except UnicodeDecodeError as exc:
        logger.warning("store_corrupt", path=str(path), error=exc.reason)
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("store_corrupt", path=str(path), error=exc.msg)
        return default


class JsonListStore:
    """Ordered sequence of JSON records persisted in one file.

    Attributes:
        path: Location of the JSON array file
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = Path(path)

    def read_records(self) -> list[dict[str, Any]]:
        """Return all records in file order; an unreadable file reads as empty."""
        data = read_json(self.path, default=[])
        if not isinstance(data, list):
            logger.warning("store_not_a_list", path=str(self.path))
            return []
        return [record for record in data if isinstance(record, dict)]

    def write_records(self, records: list[dict[str, Any]]) -> None:
        """Atomically replace the file content with ``records``."""
        atomic_write_json(self.path, records)


class FindingsStore(JsonListStore):
    """Findings log, newest first, used for deduplication and audit.

    A set of known keys is kept in memory as a fast path in front of the
    file; it is loaded lazily on first use.
    """

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self._keys: set[FindingKey] | None = None

    def all(self) -> list[Finding]:
        """Return every stored finding, newest first."""
        findings: list[Finding] = []
        for record in self.read_records():
            try:
                findings.append(Finding.from_dict(record))
            except (KeyError, ValueError) as exc:
                logger.warning("finding_record_invalid", path=str(self.path), error=str(exc))
        return findings

    def keys(self) -> set[FindingKey]:
        """Return the dedup keys of all stored findings."""
        return set(self._known())

    def has(self, key: FindingKey) -> bool:
        """Return True if a finding with ``key`` was already recorded."""
        return key in self._known()

    def add(self, finding: Finding) -> bool:
        """Record ``finding`` at the top of the log.

        Returns:
            False if a finding with the same key already exists (nothing is
            written), True otherwise.
        """
        if self.has(finding.key):
            return False
        records = self.read_records()
        records.insert(0, finding.to_dict())
        self.write_records(records)
        self._known().add(finding.key)
        return True

    def mark_delivered(self, package_name: str, version: str, script_type: str) -> bool:
        """Set ``delivered`` on the matching finding.

        Returns:
            True if a finding was updated.
        """
        records = self.read_records()
        updated = False
        for record in records:
            if (
                record.get("package_name") == package_name
                and record.get("version") == version
                and record.get("script_type") == script_type
                and not record.get("delivered")
            ):
                record["delivered"] = True
                updated = True
        if updated:
            self.write_records(records)
        return updated

    def undelivered(self) -> list[Finding]:
        """Return findings the issue tracker has not accepted yet."""
        return [finding for finding in self.all() if not finding.delivered]

    def _known(self) -> set[FindingKey]:
        if self._keys is None:
            self._keys = {finding.key for finding in self.all()}
        return self._keys


class PendingStore(JsonListStore):
    """Log of packages queued but not yet scanned, newest first."""

    def all(self) -> list[PendingTask]:
        tasks: list[PendingTask] = []
        for record in self.read_records():
            try:
                tasks.append(PendingTask.from_dict(record))
            except KeyError:
                logger.warning("pending_record_invalid", path=str(self.path), record=record)
        return tasks

    def add(self, task: PendingTask) -> None:
        """Record ``task``; an existing entry for the same package is replaced."""
        records = [
            record for record in self.read_records()
            if record.get("package_name") != task.package_name
        ]
        records.insert(0, task.to_dict())
        self.write_records(records)

    def add_many(self, tasks: list[PendingTask]) -> None:
        """Record a batch of tasks with a single rewrite."""
        if not tasks:
            return
        names = {task.package_name for task in tasks}
        kept = [record for record in self.read_records() if record.get("package_name") not in names]
        fresh = list({task.package_name: task.to_dict() for task in reversed(tasks)}.values())
        self.write_records(fresh + kept)

    def remove(self, package_name: str) -> bool:
        """Drop the entry for ``package_name``; returns True if one existed."""
        records = self.read_records()
        kept = [record for record in records if record.get("package_name") != package_name]
        if len(kept) == len(records):
            return False
        self.write_records(kept)
        return True


class CursorStore:
    """Single-object file holding the last committed feed cursor."""

    def __init__(self, path: Path) -> None:
        self.path: Path = Path(path)

    def load(self) -> Cursor | None:
        """Return the persisted cursor, or None if there is none."""
        data = read_json(self.path, default=None)
        if not isinstance(data, dict) or "sequence_token" not in data:
            return None
        token = data["sequence_token"]
        if not isinstance(token, (str, int)) or isinstance(token, bool):
            return None
        return Cursor.from_dict(data)

    def save(self, cursor: Cursor) -> None:
        atomic_write_json(self.path, cursor.to_dict())
