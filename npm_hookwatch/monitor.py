"""Process-level wiring of the watch pipeline.

:class:`Monitor` builds every component from a :class:`WatchConfig`,
obtains the starting cursor, logs findings a previous run could not
deliver, replays work left pending by a previous run, and runs the feed
producer and the queue consumers side by side until it is stopped by a
signal, by ``max_runtime``, or by a producer failure.

Startup cursor: the persisted cursor when ``resume_cursor`` is set and one
exists, otherwise the feed's current offset. Starting from "now" skips
every publish made while the monitor was down; that gap is logged.

Shutdown order: the producer stops polling, the queue gets
``shutdown_grace`` seconds to finish in-flight scans, then the shared HTTP
client is closed. Jobs still queued are dropped from memory but remain in
the pending store and are replayed on the next start.

Public API:
    Monitor: The pipeline owner
"""

from __future__ import annotations

import asyncio
import contextlib
import signal

import httpx
import structlog

from npm_hookwatch.allowlist import BenignPredicate, ScriptAllowlist
from npm_hookwatch.config import WatchConfig
from npm_hookwatch.feed import ChangeFeedCursor
from npm_hookwatch.models import ChangeEvent, Cursor, PendingTask, ScanJob
from npm_hookwatch.notifications import AlertDispatcher, NotificationSink, build_sinks
from npm_hookwatch.packument import USER_AGENT, PackumentClient
from npm_hookwatch.script_diff import ScriptDiffEngine
from npm_hookwatch.store import CursorStore, FindingsStore, PendingStore
from npm_hookwatch.versions import VersionResolver
from npm_hookwatch.work_queue import InProcessWorkQueue, WorkQueue
from npm_hookwatch.worker import ScanWorker

logger = structlog.get_logger(__name__)


def build_http_client(concurrency: int = 5) -> httpx.AsyncClient:
    """Create the HTTP client shared by the feed, the worker and the sinks."""
    return httpx.AsyncClient(
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        follow_redirects=True,
        limits=httpx.Limits(max_connections=concurrency * 2 + 4),
    )


class Monitor:
    """Own and run one watch pipeline.

    Attributes:
        config: The validated settings
        feed: The replication feed producer
        queue: The work queue between producer and worker
        worker: The scan worker
        findings: Findings store
        pending: Pending-task store
        cursor_store: Persisted feed position

    Example::

        monitor = Monitor(WatchConfig.from_env(os.environ))
        await monitor.run()
    """

    def __init__(
        self,
        config: WatchConfig,
        http_client: httpx.AsyncClient | None = None,
        is_benign: BenignPredicate | None = None,
        sinks: list[NotificationSink] | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        """Build the pipeline.

        Args:
            config: Settings for every component.
            http_client: Shared client. When None the monitor creates and
                closes its own.
            is_benign: Allowlist predicate. Defaults to the built-in rules.
            sinks: Notification sinks. Defaults to the sinks whose
                credentials are present in ``config``.
            queue: Work queue. Defaults to an in-process queue.
        """
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or build_http_client(config.concurrency)

        self.findings = FindingsStore(config.findings_path)
        self.pending = PendingStore(config.pending_path)
        self.cursor_store = CursorStore(config.cursor_path)

        self.feed = ChangeFeedCursor(
            changes_url=config.changes_url,
            replicate_db_url=config.replicate_db_url,
            http_client=self._client,
            limit=config.changes_limit,
            poll_interval=config.poll_interval,
            cursor_store=self.cursor_store,
        )
        self.queue: WorkQueue = queue or InProcessWorkQueue(
            default_delay=config.scan_delay,
            max_attempts=config.max_attempts,
            retry_base_delay=config.retry_base_delay,
        )
        if sinks is None:
            sinks = build_sinks(
                self._client,
                telegram_bot_token=config.telegram_bot_token,
                telegram_chat_id=config.telegram_chat_id,
                discord_webhook_url=config.discord_webhook_url,
                github_token=config.github_token,
            )
        self.dispatcher = AlertDispatcher(sinks)
        self.worker = ScanWorker(
            client=PackumentClient(config.registry_url, http_client=self._client),
            resolver=VersionResolver(),
            engine=ScriptDiffEngine(
                script_names=config.script_names,
                is_benign=is_benign or ScriptAllowlist.with_defaults(),
                alert_on_first_publish=config.alert_on_first_publish,
            ),
            dispatcher=self.dispatcher,
            findings=self.findings,
            pending=self.pending,
        )
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def starting_cursor(self) -> Cursor:
        """Return the cursor to start polling from.

        Raises:
            InitialCursorError: If no cursor is persisted and the feed's
                current offset cannot be read.
        """
        if self.config.resume_cursor:
            saved = self.cursor_store.load()
            if saved is not None:
                logger.info("cursor_resumed", since=saved.sequence_token)
                return saved
        cursor = await self.feed.initial_cursor()
        logger.warning(
            "cursor_reset_to_now",
            since=cursor.sequence_token,
            detail="publishes made while the monitor was down are not scanned",
        )
        self.cursor_store.save(cursor)
        return cursor

    def report_undelivered(self) -> int:
        """Log findings the issue tracker never accepted; returns their count."""
        undelivered = self.findings.undelivered()
        if undelivered:
            logger.warning(
                "undelivered_findings",
                count=len(undelivered),
                findings=[
                    f"{finding.package_name}@{finding.version}:{finding.script_type}"
                    for finding in undelivered
                ],
            )
        return len(undelivered)

    async def replay_pending(self) -> int:
        """Re-enqueue packages a previous run left unscanned."""
        count = 0
        # Stored newest first; replay oldest first
        for task in reversed(self.pending.all()):
            if await self.queue.enqueue(ScanJob(task.package_name), delay=0):
                count += 1
        if count:
            logger.info("pending_replayed", count=count)
        return count

    async def handoff(self, events: list[ChangeEvent]) -> None:
        """Record ``events`` as pending and queue a scan for each."""
        self.pending.add_many([PendingTask(event.package_name) for event in events])
        for event in events:
            await self.queue.enqueue(ScanJob(event.package_name))

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask :meth:`run` to shut down gracefully."""
        if not self._stop.is_set():
            logger.info("shutdown_requested")
            self._stop.set()

    async def run(self) -> None:
        """Run until stopped, then shut down gracefully.

        Raises:
            InitialCursorError: If no starting cursor can be obtained.
        """
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)

        producer: asyncio.Task[None] | None = None
        consumer: asyncio.Task[None] | None = None
        try:
            cursor = await self.starting_cursor()
            self.report_undelivered()
            consumer = asyncio.create_task(
                self.queue.process(
                    self.worker.handle,
                    concurrency=self.config.concurrency,
                    max_per_second=self.config.max_jobs_per_second,
                    on_abandoned=self.worker.abandon,
                )
            )
            await self.replay_pending()
            producer = asyncio.create_task(self.feed.run(cursor, self.handoff))
            stopper = asyncio.create_task(self._stop.wait())

            logger.info(
                "monitor_started",
                concurrency=self.config.concurrency,
                scan_delay=self.config.scan_delay,
                sinks=[sink.name for sink in self.dispatcher.sinks],
                max_runtime=self.config.max_runtime,
            )
            done, _ = await asyncio.wait(
                {producer, consumer, stopper},
                timeout=self.config.max_runtime,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                logger.info("max_runtime_reached", max_runtime=self.config.max_runtime)
            stopper.cancel()
        finally:
            await self._shutdown(producer, consumer)
            for sig in installed:
                loop.remove_signal_handler(sig)

        if producer is not None and producer.done() and not producer.cancelled():
            exc = producer.exception()
            if exc is not None:
                raise exc

    async def _shutdown(
        self,
        producer: asyncio.Task[None] | None,
        consumer: asyncio.Task[None] | None,
    ) -> None:
        self.feed.stop()
        if producer is not None:
            # The cursor is committed only after a handoff, so cancelling
            # mid-poll or mid-handoff replays the batch on the next start.
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            if not producer.cancelled() and producer.exception() is not None:
                logger.error("producer_failed", error=str(producer.exception()))
        await self.queue.close(self.config.shutdown_grace)
        if consumer is not None:
            await asyncio.gather(consumer, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()
        cursor = self.feed.cursor
        logger.info("monitor_stopped", cursor=cursor.sequence_token if cursor is not None else None)
