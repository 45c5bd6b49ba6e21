"""Scan worker: one queued package in, findings and alerts out.

For each :class:`~npm_hookwatch.models.ScanJob` the worker fetches the
packument, resolves the latest and previous versions, diffs their
lifecycle scripts, records new findings and fans the alerts out.

A finding is written to the findings store before its alert is sent and
marked delivered once the issue tracker accepted it. A finding key that is
already in the store is never alerted again, so a package re-published,
re-scanned or replayed after a restart fires each (package, version,
script) at most once.

Errors are not handled here: a failing fetch raises out of
:meth:`ScanWorker.handle` and the work queue retries or abandons the job.

Public API:
    ScanWorker: The job handler
    ScanResult: Outcome of one scan
    CheckReport: Read-only diff of one package
    inspect_package: Fetch, resolve and diff without side effects
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from npm_hookwatch.models import Alert, Finding, ScanJob
from npm_hookwatch.notifications import AlertDispatcher
from npm_hookwatch.packument import PackumentClient
from npm_hookwatch.script_diff import ScriptDiffEngine
from npm_hookwatch.store import FindingsStore, PendingStore
from npm_hookwatch.versions import VersionResolver

logger = structlog.get_logger(__name__)

#: Packages whose last seen latest version is remembered in memory.
DEFAULT_CACHE_SIZE = 1000


@dataclass
class ScanResult:
    """Outcome of scanning one package.

    Attributes:
        package_name: The scanned package
        latest: Resolved latest version, None when there was none
        previous: Resolved previous version, if any
        alerts: New alerts raised by this scan
        delivered: Alerts the authoritative sink accepted
        skipped: Reason the diff was skipped, empty when it ran
    """

    package_name: str
    latest: str | None = None
    previous: str | None = None
    alerts: list[Alert] = field(default_factory=list)
    delivered: list[Alert] = field(default_factory=list)
    skipped: str = ""


class ScanWorker:
    """Drive fetch, resolve, diff, persist and dispatch for one package.

    Attributes:
        cache_size: Bound on the last-seen-latest cache

    Example::

        worker = ScanWorker(client, VersionResolver(), engine, dispatcher, findings, pending)
        await queue.process(worker.handle, concurrency=5, max_per_second=10,
                            on_abandoned=worker.abandon)
    """

    def __init__(
        self,
        client: PackumentClient,
        resolver: VersionResolver,
        engine: ScriptDiffEngine,
        dispatcher: AlertDispatcher,
        findings: FindingsStore,
        pending: PendingStore,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._engine = engine
        self._dispatcher = dispatcher
        self._findings = findings
        self._pending = pending
        self.cache_size: int = cache_size
        self._last_seen: dict[str, str] = {}

    async def handle(self, job: ScanJob) -> ScanResult:
        """Scan ``job.package_name``.

        Raises:
            FetchError: If the registry answered with a non-success status.
            FetchTimeoutError: If the packument fetch timed out.
            TransientNetworkError: On other network failures.
            MalformedResponseError: If the packument is not a JSON object.
        """
        name = job.package_name
        log = logger.bind(package=name, attempt=job.attempts)

        packument = await self._client.fetch(name)
        resolution = self._resolver.resolve(packument)
        result = ScanResult(package_name=name, latest=resolution.latest, previous=resolution.previous)

        latest = resolution.latest
        if latest is None:
            log.info("no_versions", versions=len(packument.versions))
            result.skipped = "no_versions"
            self._finish(name)
            return result

        if resolution.tag_lags:
            log.info("tag_lags", dist_tag_latest=resolution.dist_tag_latest, latest=resolution.latest)

        if self._last_seen.get(name) == latest:
            log.debug("latest_unchanged", latest=latest)
            result.skipped = "latest_unchanged"
            self._finish(name)
            return result

        latest_doc = packument.versions[latest]
        previous_doc = packument.versions.get(resolution.previous) if resolution.previous else None
        alerts = self._engine.diff(latest_doc, previous_doc)

        fresh = [
            alert for alert in alerts
            if self._findings.add(Finding.from_alert(name, latest, resolution.previous, alert))
        ]
        if len(fresh) < len(alerts):
            log.info("alert_already_recorded", latest=latest, duplicates=len(alerts) - len(fresh))
        result.alerts = fresh

        if fresh:
            log.warning(
                "alert_detected",
                latest=latest,
                previous=resolution.previous,
                scripts=[alert.script_type for alert in fresh],
                actions=[alert.action.value for alert in fresh],
            )
            result.delivered, report = await self._dispatcher.dispatch_with_report(
                name, latest, resolution.previous, fresh, packument
            )
            if report.failures:
                log.warning(
                    "alert_delivery_incomplete",
                    latest=latest,
                    delivered=len(result.delivered),
                    failures=report.failures,
                )
            for alert in result.delivered:
                self._findings.mark_delivered(name, latest, alert.script_type)
        else:
            log.info("scan_complete", latest=latest, previous=resolution.previous)

        self._remember(name, latest)
        self._finish(name)
        return result

    def abandon(self, job: ScanJob, exc: BaseException) -> None:
        """Queue callback for a job whose retries are exhausted."""
        self._pending.remove(job.package_name)

    def _finish(self, name: str) -> None:
        self._pending.remove(name)

    def _remember(self, name: str, latest: str) -> None:
        if name not in self._last_seen and len(self._last_seen) >= self.cache_size:
            self._last_seen.clear()
        self._last_seen[name] = latest


# ---------------------------------------------------------------------------
# One-off inspection
# ---------------------------------------------------------------------------


@dataclass
class CheckReport:
    """Read-only diff of one package, as shown by ``hookwatch check``.

    Attributes:
        package_name: The inspected package
        latest: Resolved latest version
        previous: Resolved previous version
        dist_tag_latest: The ``dist-tags.latest`` pointer
        tag_lags: Whether the pointer lags behind ``latest``
        script_names: Watched script names, in priority order
        latest_scripts: Watched scripts of ``latest``
        previous_scripts: Watched scripts of ``previous``
        alerts: Alerts the diff would raise
    """

    package_name: str
    latest: str | None = None
    previous: str | None = None
    dist_tag_latest: str | None = None
    tag_lags: bool = False
    script_names: tuple[str, ...] = ()
    latest_scripts: dict[str, str] = field(default_factory=dict)
    previous_scripts: dict[str, str] = field(default_factory=dict)
    alerts: list[Alert] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """1 when the diff raised alerts, 0 otherwise."""
        return 1 if self.alerts else 0

    def to_dict(self) -> dict[str, object]:
        return {
            "package_name": self.package_name,
            "latest": self.latest,
            "previous": self.previous,
            "dist_tag_latest": self.dist_tag_latest,
            "tag_lags": self.tag_lags,
            "latest_scripts": self.latest_scripts,
            "previous_scripts": self.previous_scripts,
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


async def inspect_package(
    client: PackumentClient,
    resolver: VersionResolver,
    engine: ScriptDiffEngine,
    package_name: str,
) -> CheckReport:
    """Fetch, resolve and diff ``package_name`` without persisting or alerting.

    Raises:
        FetchError, FetchTimeoutError, TransientNetworkError,
        MalformedResponseError: As :meth:`PackumentClient.fetch`.
    """
    packument = await client.fetch(package_name)
    resolution = resolver.resolve(packument)
    report = CheckReport(
        package_name=package_name,
        latest=resolution.latest,
        previous=resolution.previous,
        dist_tag_latest=resolution.dist_tag_latest,
        tag_lags=resolution.tag_lags,
        script_names=engine.script_names,
    )
    if resolution.latest is None:
        return report

    latest_doc = packument.versions[resolution.latest]
    previous_doc = packument.versions.get(resolution.previous) if resolution.previous else None
    report.latest_scripts = _watched(latest_doc.scripts, engine.script_names)
    if previous_doc is not None:
        report.previous_scripts = _watched(previous_doc.scripts, engine.script_names)
    report.alerts = engine.diff(latest_doc, previous_doc)
    return report


def _watched(scripts: dict[str, str], names: tuple[str, ...]) -> dict[str, str]:
    return {name: scripts[name] for name in names if scripts.get(name, "").strip()}
