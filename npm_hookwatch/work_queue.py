"""Work queue decoupling feed ingestion from package scanning.

The producer learns about changed packages much faster than they can be
scanned, and the registry's packument store trails the replication feed by
a few seconds. The queue absorbs both: it deduplicates jobs by key, holds
each job invisible for a configurable delay, bounds the number of
concurrent scans, rate-limits dequeues, and retries failed jobs a bounded
number of times.

:class:`WorkQueue` is the capability the rest of the pipeline depends on.
:class:`InProcessWorkQueue` implements it on one asyncio event loop; a
durable broker can implement the same interface for deployments that need
the backlog to survive restarts (the pending store covers that for the
in-process queue).

Delivery is at-least-once: a job whose handler raised is run again until it
succeeds or its attempts are exhausted. Exhausted jobs are logged as
``job_abandoned``; they never propagate an exception out of the queue.

Public API:
    WorkQueue: Abstract queue capability
    InProcessWorkQueue: asyncio reference implementation
    TokenBucket: Shared rate limiter
    JobHandler: Type of the coroutine function run for each job
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from npm_hookwatch.models import ScanJob

logger = structlog.get_logger(__name__)

JobHandler = Callable[[ScanJob], Awaitable[object]]
AbandonCallback = Callable[[ScanJob, BaseException], object]

#: Default visibility delay: gives the registry's primary store time to
#: reflect a publish the replication feed already reported.
DEFAULT_VISIBILITY_DELAY = 30.0


class TokenBucket:
    """Token-bucket rate limiter shared by all consumers of a queue.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum number of stored tokens (burst size)
    """

    def __init__(self, rate: float, capacity: float | None = None) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be > 0, got {rate}")
        self.rate: float = rate
        self.capacity: float = capacity if capacity is not None else max(1.0, rate)
        self._tokens: float = self.capacity
        self._updated: float | None = None
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        if self._updated is not None:
            self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        """Wait until a token is available and take it."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            while True:
                self._refill(loop.time())
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)


@dataclass
class _Entry:
    key: str
    job: ScanJob


class WorkQueue(abc.ABC):
    """Capability shared by every queue implementation."""

    @abc.abstractmethod
    async def enqueue(
        self,
        job: ScanJob,
        dedup_key: str | None = None,
        delay: float | None = None,
    ) -> bool:
        """Queue ``job``; return False if a job with the same key is already queued or running."""

    @abc.abstractmethod
    async def process(
        self,
        handler: JobHandler,
        concurrency: int,
        max_per_second: float,
        on_abandoned: AbandonCallback | None = None,
    ) -> None:
        """Run ``handler`` for queued jobs until the queue is closed."""

    @abc.abstractmethod
    def pending_keys(self) -> set[str]:
        """Return the keys of all queued, delayed or running jobs."""

    @abc.abstractmethod
    async def join(self) -> None:
        """Wait until no job is queued, delayed or running."""

    @abc.abstractmethod
    async def close(self, grace: float) -> None:
        """Stop processing; give running jobs ``grace`` seconds to finish."""


class InProcessWorkQueue(WorkQueue):
    """asyncio implementation of :class:`WorkQueue`.

    Attributes:
        default_delay: Visibility delay applied when ``enqueue`` gets none
        max_attempts: Total attempts per job, first run included
        retry_base_delay: Delay before the first retry; doubles per attempt
        retry_max_delay: Upper bound of the retry delay

    Example::

        queue = InProcessWorkQueue(default_delay=30, max_attempts=3)
        await queue.enqueue(ScanJob("left-pad"))
        await queue.process(worker.handle, concurrency=5, max_per_second=10)
    """

    def __init__(
        self,
        default_delay: float = DEFAULT_VISIBILITY_DELAY,
        max_attempts: int = 3,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 60.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.default_delay: float = default_delay
        self.max_attempts: int = max_attempts
        self.retry_base_delay: float = retry_base_delay
        self.retry_max_delay: float = retry_max_delay

        self._ready: asyncio.Queue[_Entry] = asyncio.Queue()
        self._keys: set[str] = set()
        self._timers: set[asyncio.Task[None]] = set()
        self._consumers: list[asyncio.Task[None]] = []
        self._busy: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job: ScanJob,
        dedup_key: str | None = None,
        delay: float | None = None,
    ) -> bool:
        if self._closed:
            logger.warning("enqueue_after_close", package=job.package_name)
            return False
        key = dedup_key or job.package_name
        if key in self._keys:
            logger.debug("job_deduplicated", package=job.package_name, key=key)
            return False
        self._keys.add(key)
        self._idle.clear()
        self._schedule(_Entry(key=key, job=job), self.default_delay if delay is None else delay)
        return True

    def pending_keys(self) -> set[str]:
        return set(self._keys)

    def _schedule(self, entry: _Entry, delay: float) -> None:
        if delay <= 0:
            self._ready.put_nowait(entry)
            return
        timer = asyncio.create_task(self._release_after(entry, delay))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _release_after(self, entry: _Entry, delay: float) -> None:
        await asyncio.sleep(delay)
        self._ready.put_nowait(entry)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def process(
        self,
        handler: JobHandler,
        concurrency: int,
        max_per_second: float,
        on_abandoned: AbandonCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        bucket = TokenBucket(max_per_second)
        self._consumers = [
            asyncio.create_task(self._consume(handler, bucket, on_abandoned))
            for _ in range(concurrency)
        ]
        logger.info("queue_processing", concurrency=concurrency, max_per_second=max_per_second)
        await asyncio.gather(*self._consumers, return_exceptions=True)

    async def _consume(
        self,
        handler: JobHandler,
        bucket: TokenBucket,
        on_abandoned: AbandonCallback | None,
    ) -> None:
        current = asyncio.current_task()
        if current is None:
            raise RuntimeError("queue consumers must run inside a task")
        while not self._closed:
            entry = await self._ready.get()
            # Tokens are spent per dequeued job, never held while idle
            try:
                await bucket.acquire()
            except asyncio.CancelledError:
                self._ready.put_nowait(entry)
                raise
            self._busy.add(current)
            try:
                await self._run(entry, handler, on_abandoned)
            finally:
                self._busy.discard(current)

    async def _run(
        self,
        entry: _Entry,
        handler: JobHandler,
        on_abandoned: AbandonCallback | None,
    ) -> None:
        job = entry.job
        job.attempts += 1
        try:
            await handler(job)
        except asyncio.CancelledError:
            logger.warning("job_abandoned", package=job.package_name, attempts=job.attempts, reason="shutdown")
            self._release(entry.key)
            raise
        except Exception as exc:  # noqa: BLE001 - job boundary
            if job.attempts < self.max_attempts and not self._closed:
                backoff = self._retry_delay(job.attempts)
                logger.warning(
                    "job_retry",
                    package=job.package_name,
                    attempt=job.attempts,
                    max_attempts=self.max_attempts,
                    retry_in=backoff,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                self._schedule(entry, backoff)
                return
            logger.error(
                "job_abandoned",
                package=job.package_name,
                attempts=job.attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._release(entry.key)
            if on_abandoned is not None:
                self._notify_abandoned(on_abandoned, job, exc)
            return
        self._release(entry.key)

    def _retry_delay(self, attempts: int) -> float:
        return min(self.retry_max_delay, self.retry_base_delay * (2 ** (attempts - 1)))

    @staticmethod
    def _notify_abandoned(callback: AbandonCallback, job: ScanJob, exc: BaseException) -> None:
        try:
            callback(job, exc)
        except Exception as callback_exc:  # noqa: BLE001
            logger.error("abandon_callback_failed", package=job.package_name, error=str(callback_exc))

    def _release(self, key: str) -> None:
        self._keys.discard(key)
        if not self._keys:
            self._idle.set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        await self._idle.wait()

    async def close(self, grace: float) -> None:
        if self._closed:
            return
        self._closed = True

        for timer in list(self._timers):
            timer.cancel()
        dropped = len(self._keys) - len(self._busy)

        idle_consumers = [task for task in self._consumers if task not in self._busy]
        for task in idle_consumers:
            task.cancel()

        busy = set(self._busy)
        if busy:
            logger.info("queue_draining", in_flight=len(busy), grace=grace)
            _, still_running = await asyncio.wait(busy, timeout=grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        await asyncio.gather(*idle_consumers, return_exceptions=True)

        if dropped > 0:
            logger.info("queue_closed_with_backlog", dropped=dropped)
        self._keys.clear()
        self._idle.set()
