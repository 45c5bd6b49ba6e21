"""Replication feed producer.

Polls the registry's CouchDB-style ``_changes`` endpoint with a resumable
cursor and hands each batch of changed package names to the pipeline.

The loop never terminates on a transient failure: network errors,
non-success statuses and malformed bodies are retried with exponential
backoff (1s, doubling, capped at 30s). The cursor is advanced, and
persisted, only after a batch has been handed off, so a crash between
poll and handoff replays the batch instead of losing it.

Public API:
    ChangeFeedCursor: The producer
    Handoff: Type of the coroutine function receiving each batch
    is_internal_document: True for reserved ids such as ``_design/...``
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from npm_hookwatch.errors import RETRYABLE_ERRORS, InitialCursorError, MalformedResponseError
from npm_hookwatch.models import ChangeEvent, Cursor, SequenceToken
from npm_hookwatch.packument import get_json
from npm_hookwatch.store import CursorStore

logger = structlog.get_logger(__name__)

Handoff = Callable[[list[ChangeEvent]], Awaitable[None]]

#: Deadline for one feed request, in seconds.
FEED_TIMEOUT = 60.0
BACKOFF_BASE = 1.0
BACKOFF_MAX = 30.0


def is_internal_document(doc_id: str) -> bool:
    """Return True for reserved CouchDB document ids, which are not packages."""
    return doc_id.startswith("_design/")


def _valid_token(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


class ChangeFeedCursor:
    """Poll the replication feed and emit changed package names.

    Attributes:
        changes_url: URL of the ``_changes`` endpoint
        replicate_db_url: URL of the database info document
        limit: Rows requested per poll
        poll_interval: Seconds to wait after an empty batch
        cursor: The last committed cursor, None before startup

    Example::

        feed = ChangeFeedCursor(changes_url, replicate_db_url, http_client=client)
        cursor = await feed.initial_cursor()
        await feed.run(cursor, handoff)
    """

    def __init__(
        self,
        changes_url: str,
        replicate_db_url: str,
        http_client: httpx.AsyncClient,
        limit: int = 200,
        poll_interval: float = 1.5,
        cursor_store: CursorStore | None = None,
        timeout: float = FEED_TIMEOUT,
        backoff_base: float = BACKOFF_BASE,
        backoff_max: float = BACKOFF_MAX,
    ) -> None:
        self.changes_url: str = changes_url
        self.replicate_db_url: str = replicate_db_url
        self.limit: int = limit
        self.poll_interval: float = poll_interval
        self.timeout: float = timeout
        self.backoff_base: float = backoff_base
        self.backoff_max: float = backoff_max
        self.cursor: Cursor | None = None
        self._client = http_client
        self._cursor_store = cursor_store
        self._stop = asyncio.Event()

    async def initial_cursor(self) -> Cursor:
        """Return the feed's current offset ("now").

        Raises:
            InitialCursorError: If the offset cannot be obtained. Not retried.
        """
        try:
            info = await get_json(self._client, self.replicate_db_url, self.timeout)
        except RETRYABLE_ERRORS as exc:
            raise InitialCursorError(f"cannot read {self.replicate_db_url}: {exc}") from exc
        token = info.get("update_seq")
        if not _valid_token(token):
            raise InitialCursorError(f"replicate db info missing update_seq: {self.replicate_db_url}")
        return Cursor(token)

    async def poll(self, cursor: Cursor, limit: int | None = None) -> tuple[list[ChangeEvent], Cursor]:
        """Fetch one batch of changes after ``cursor``.

        Returns:
            The batch's events, in feed order with reserved ids and repeats
            removed, and the cursor to resume from.

        Raises:
            TransientNetworkError: On network failure or non-success status.
            MalformedResponseError: If ``results`` or ``last_seq`` is missing.
        """
        params = {"since": cursor.sequence_token, "limit": limit or self.limit}
        body = await get_json(self._client, self.changes_url, self.timeout, params=params)

        results = body.get("results")
        last_seq: SequenceToken = body.get("last_seq")  # type: ignore[assignment]
        if not isinstance(results, list):
            raise MalformedResponseError(f"changes response from {self.changes_url} has no results list")
        if not _valid_token(last_seq):
            raise MalformedResponseError(f"changes response from {self.changes_url} has no last_seq")

        seen: set[str] = set()
        events: list[ChangeEvent] = []
        for row in results:
            doc_id = row.get("id") if isinstance(row, dict) else None
            if not isinstance(doc_id, str) or not doc_id or is_internal_document(doc_id):
                continue
            if doc_id in seen:
                continue
            seen.add(doc_id)
            events.append(ChangeEvent(package_name=doc_id, sequence_token=last_seq))
        return events, Cursor(last_seq)

    async def run(self, cursor: Cursor, handoff: Handoff) -> None:
        """Poll forever from ``cursor`` until :meth:`stop` is called."""
        self.cursor = cursor
        backoff = self.backoff_base
        logger.info("feed_started", since=cursor.sequence_token, limit=self.limit)

        while not self._stop.is_set():
            try:
                events, next_cursor = await self.poll(self.cursor, self.limit)
            except RETRYABLE_ERRORS as exc:
                logger.warning(
                    "poll_error",
                    since=self.cursor.sequence_token,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    retry_in=backoff,
                )
                await self._sleep(backoff)
                backoff = min(self.backoff_max, backoff * 2)
                continue

            backoff = self.backoff_base
            if events:
                await handoff(events)
                logger.info("batch_handed_off", count=len(events), last_seq=next_cursor.sequence_token)
            self._commit(next_cursor)

            if not events:
                await self._sleep(self.poll_interval)

        logger.info("feed_stopped", cursor=self.cursor.sequence_token)

    def stop(self) -> None:
        """Ask :meth:`run` to return; an in-progress sleep ends immediately."""
        self._stop.set()

    def _commit(self, cursor: Cursor) -> None:
        if cursor == self.cursor:
            return
        self.cursor = cursor
        if self._cursor_store is not None:
            self._cursor_store.save(cursor)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
