"""Tests for npm_hookwatch.work_queue module.

Runs the in-process queue on the test event loop with short delays.
Covers:

- Dedup by key while a job is queued, delayed or in flight
- Delayed visibility
- Bounded concurrency
- Retry with backoff, then abandonment (logged as job_abandoned)
- Token-bucket rate limiting
- Graceful close with and without in-flight jobs
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from structlog.testing import capture_logs

from npm_hookwatch.models import ScanJob
from npm_hookwatch.work_queue import InProcessWorkQueue, TokenBucket


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _start(queue: InProcessWorkQueue, handler, concurrency: int = 2, rate: float = 1000.0, on_abandoned=None):
    return asyncio.create_task(
        queue.process(handler, concurrency=concurrency, max_per_second=rate, on_abandoned=on_abandoned)
    )


class TestEnqueue:
    """Tests for enqueue and dedup."""

    async def test_dedup_while_queued(self) -> None:
        """A second job with the same key is rejected while the first waits."""
        queue = InProcessWorkQueue(default_delay=10)
        assert await queue.enqueue(ScanJob("left-pad"))
        assert not await queue.enqueue(ScanJob("left-pad"))
        assert await queue.enqueue(ScanJob("right-pad"))
        assert queue.pending_keys() == {"left-pad", "right-pad"}
        await queue.close(grace=0)

    async def test_explicit_dedup_key(self) -> None:
        """dedup_key overrides the package name as key."""
        queue = InProcessWorkQueue(default_delay=10)
        assert await queue.enqueue(ScanJob("a"), dedup_key="k")
        assert not await queue.enqueue(ScanJob("b"), dedup_key="k")
        await queue.close(grace=0)

    async def test_dedup_while_in_flight(self) -> None:
        """A job is not duplicated while its handler runs."""
        queue = InProcessWorkQueue(default_delay=0)
        started = asyncio.Event()
        release = asyncio.Event()
        runs: list[str] = []

        async def handler(job: ScanJob) -> None:
            runs.append(job.package_name)
            started.set()
            await release.wait()

        task = _start(queue, handler)
        await queue.enqueue(ScanJob("left-pad"))
        await started.wait()
        assert not await queue.enqueue(ScanJob("left-pad"))
        release.set()
        await queue.join()
        assert runs == ["left-pad"]
        assert await queue.enqueue(ScanJob("left-pad"), delay=5)
        await queue.close(grace=1)
        await task

    async def test_enqueue_after_close(self) -> None:
        """A closed queue rejects new jobs."""
        queue = InProcessWorkQueue()
        await queue.close(grace=0)
        assert not await queue.enqueue(ScanJob("x"))

    def test_invalid_attempts(self) -> None:
        """max_attempts must be positive."""
        with pytest.raises(ValueError):
            InProcessWorkQueue(max_attempts=0)


class TestProcessing:
    """Tests for delayed visibility, concurrency and retries."""

    async def test_delay_postpones_visibility(self) -> None:
        """A delayed job runs no earlier than its delay."""
        queue = InProcessWorkQueue(default_delay=0.1)
        loop = asyncio.get_running_loop()
        ran_at: list[float] = []

        async def handler(job: ScanJob) -> None:
            ran_at.append(loop.time())

        task = _start(queue, handler)
        queued_at = loop.time()
        await queue.enqueue(ScanJob("x"))
        await queue.join()
        assert ran_at and ran_at[0] - queued_at >= 0.09
        await queue.close(grace=1)
        await task

    async def test_delay_does_not_block_other_jobs(self) -> None:
        """An immediate job runs while a delayed one waits."""
        queue = InProcessWorkQueue(default_delay=0)
        order: list[str] = []

        async def handler(job: ScanJob) -> None:
            order.append(job.package_name)

        task = _start(queue, handler, concurrency=1)
        await queue.enqueue(ScanJob("slow"), delay=0.1)
        await queue.enqueue(ScanJob("fast"))
        await queue.join()
        assert order == ["fast", "slow"]
        await queue.close(grace=1)
        await task

    async def test_concurrency_bound(self) -> None:
        """No more than ``concurrency`` handlers run at once."""
        queue = InProcessWorkQueue(default_delay=0)
        running = 0
        peak = 0

        async def handler(job: ScanJob) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        task = _start(queue, handler, concurrency=2)
        for index in range(6):
            await queue.enqueue(ScanJob(f"pkg-{index}"))
        await queue.join()
        assert peak == 2
        await queue.close(grace=1)
        await task

    async def test_retry_then_success(self) -> None:
        """A failing job is retried and its key released after success."""
        queue = InProcessWorkQueue(default_delay=0, max_attempts=3, retry_base_delay=0.01)
        attempts: list[int] = []

        async def handler(job: ScanJob) -> None:
            attempts.append(job.attempts)
            if job.attempts < 2:
                raise RuntimeError("boom")

        task = _start(queue, handler)
        with capture_logs() as logs:
            await queue.enqueue(ScanJob("x"))
            await queue.join()
        assert attempts == [1, 2]
        events = [entry["event"] for entry in logs]
        assert "job_retry" in events
        assert "job_abandoned" not in events
        assert queue.pending_keys() == set()
        await queue.close(grace=1)
        await task

    async def test_abandoned_after_max_attempts(self) -> None:
        """An always-failing job is abandoned, logged, and reported once."""
        queue = InProcessWorkQueue(default_delay=0, max_attempts=3, retry_base_delay=0.01)
        abandoned: list[tuple[str, str]] = []

        async def handler(job: ScanJob) -> None:
            raise ValueError("nope")

        def on_abandoned(job: ScanJob, exc: BaseException) -> None:
            abandoned.append((job.package_name, type(exc).__name__))

        task = _start(queue, handler, on_abandoned=on_abandoned)
        with capture_logs() as logs:
            await queue.enqueue(ScanJob("bad"))
            await queue.join()
        assert abandoned == [("bad", "ValueError")]
        retries = [entry for entry in logs if entry["event"] == "job_retry"]
        final = [entry for entry in logs if entry["event"] == "job_abandoned"]
        assert [entry["retry_in"] for entry in retries] == [0.01, 0.02]
        assert len(final) == 1
        assert final[0]["log_level"] == "error"
        assert final[0]["attempts"] == 3
        assert not task.done()
        await queue.close(grace=1)
        await task

    async def test_retry_delay_capped(self) -> None:
        """Backoff doubles per attempt up to retry_max_delay."""
        queue = InProcessWorkQueue(retry_base_delay=5, retry_max_delay=60)
        assert [queue._retry_delay(n) for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 40, 60]
        await queue.close(grace=0)

    async def test_failing_abandon_callback_contained(self) -> None:
        """An exception in on_abandoned does not stop the consumers."""
        queue = InProcessWorkQueue(default_delay=0, max_attempts=1)
        handled: list[str] = []

        async def handler(job: ScanJob) -> None:
            if job.package_name == "bad":
                raise RuntimeError("boom")
            handled.append(job.package_name)

        def on_abandoned(job: ScanJob, exc: BaseException) -> None:
            raise RuntimeError("callback broke")

        task = _start(queue, handler, concurrency=1, on_abandoned=on_abandoned)
        await queue.enqueue(ScanJob("bad"))
        await queue.join()
        await queue.enqueue(ScanJob("good"))
        await queue.join()
        assert handled == ["good"]
        await queue.close(grace=1)
        await task


class TestClose:
    """Tests for graceful shutdown."""

    async def test_close_waits_for_in_flight(self) -> None:
        """A job finishing within the grace period completes normally."""
        queue = InProcessWorkQueue(default_delay=0)
        finished: list[str] = []
        started = asyncio.Event()

        async def handler(job: ScanJob) -> None:
            started.set()
            await asyncio.sleep(0.05)
            finished.append(job.package_name)

        task = _start(queue, handler)
        await queue.enqueue(ScanJob("x"))
        await started.wait()
        await queue.close(grace=1)
        await task
        assert finished == ["x"]

    async def test_close_cancels_after_grace(self) -> None:
        """A job outliving the grace period is cancelled and logged as abandoned."""
        queue = InProcessWorkQueue(default_delay=0)
        started = asyncio.Event()

        async def handler(job: ScanJob) -> None:
            started.set()
            await asyncio.sleep(10)

        task = _start(queue, handler)
        await queue.enqueue(ScanJob("stuck"))
        await started.wait()
        with capture_logs() as logs:
            await queue.close(grace=0.05)
        await asyncio.wait_for(task, timeout=1)
        shutdown = [entry for entry in logs if entry["event"] == "job_abandoned"]
        assert shutdown and shutdown[0]["reason"] == "shutdown"
        assert queue.pending_keys() == set()

    async def test_close_drops_delayed_jobs(self) -> None:
        """Delayed jobs never run after close."""
        queue = InProcessWorkQueue(default_delay=0.05)
        runs: list[str] = []

        async def handler(job: ScanJob) -> None:
            runs.append(job.package_name)

        task = _start(queue, handler)
        await queue.enqueue(ScanJob("later"))
        await queue.close(grace=1)
        await task
        await asyncio.sleep(0.1)
        assert runs == []


class TestTokenBucket:
    """Tests for the rate limiter."""

    async def test_burst_then_throttle(self) -> None:
        """After the burst, tokens arrive at ``rate`` per second."""
        bucket = TokenBucket(rate=20, capacity=1)
        loop = asyncio.get_running_loop()
        start = loop.time()
        for _ in range(3):
            await bucket.acquire()
        # One token up front, two more at 50ms each
        assert loop.time() - start >= 0.09

    def test_invalid_rate(self) -> None:
        """A non-positive rate is rejected."""
        with pytest.raises(ValueError):
            TokenBucket(rate=0)

    async def test_rate_limits_dequeue(self) -> None:
        """The queue starts at most ``max_per_second`` jobs per second."""
        queue = InProcessWorkQueue(default_delay=0)
        loop = asyncio.get_running_loop()
        started: list[float] = []

        async def handler(job: ScanJob) -> None:
            started.append(loop.time())

        task = _start(queue, handler, concurrency=4, rate=10)
        for index in range(13):
            await queue.enqueue(ScanJob(f"pkg-{index}"))
        await queue.join()
        # Burst of 10, then three more at 100ms intervals
        assert started[-1] - started[0] >= 0.25
        await queue.close(grace=1)
        await task

    async def test_idle_consumers_hold_no_tokens(self) -> None:
        """After an idle period the first burst never exceeds the bucket capacity."""
        queue = InProcessWorkQueue(default_delay=0)
        loop = asyncio.get_running_loop()
        started: list[float] = []

        async def handler(job: ScanJob) -> None:
            started.append(loop.time())

        task = _start(queue, handler, concurrency=4, rate=5)
        await asyncio.sleep(1.1)
        for index in range(9):
            await queue.enqueue(ScanJob(f"pkg-{index}"))
        await queue.join()
        burst = [moment for moment in started if moment - started[0] < 0.1]
        assert len(burst) == 5
        await queue.close(grace=1)
        await task
