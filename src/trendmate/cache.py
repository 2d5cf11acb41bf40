"""In-memory result cache keyed by logical query.

Entries are never evicted by age within a session.  A staleness window
only decides whether a background refresh is scheduled; the stale value
is still served.  Concurrent requests for one key share a single
in-flight fetch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from trendmate.models import CacheEntry, FatalFailure, LogicalQuery, RetryableFailure, Success

log = logging.getLogger(__name__)

Outcome = Success | RetryableFailure | FatalFailure
Fetch = Callable[[], Awaitable[Outcome]]


class ResultCache:
    """Query → outcome store shared by every workflow in a session."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[LogicalQuery, CacheEntry] = {}
        self._inflight: dict[LogicalQuery, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, query: LogicalQuery) -> bool:
        return query in self._entries

    # ── Direct access ────────────────────────────────────────────────

    def get(self, query: LogicalQuery) -> CacheEntry | None:
        return self._entries.get(query)

    def put(self, query: LogicalQuery, outcome: Outcome) -> CacheEntry:
        """Store an outcome, overwriting any entry under the same key."""
        entry = CacheEntry(query=query, outcome=outcome, written_at=self._clock())
        self._entries[query] = entry
        return entry

    def invalidate(self, predicate: Callable[[LogicalQuery], bool]) -> int:
        """Drop every entry whose key matches; returns the number dropped.

        In-flight fetches for matching keys are detached so their results
        are not written back.
        """
        doomed = [q for q in self._entries if predicate(q)]
        for query in doomed:
            del self._entries[query]
        for query in [q for q in self._inflight if predicate(q)]:
            del self._inflight[query]
        if doomed:
            log.info("Invalidated %d cache entries", len(doomed))
        return len(doomed)

    def rekey(self, old: LogicalQuery, new: LogicalQuery) -> bool:
        """Move an entry to a new key without touching its outcome."""
        entry = self._entries.pop(old, None)
        if entry is None:
            return False
        self._entries[new] = CacheEntry(
            query=new, outcome=entry.outcome, written_at=entry.written_at,
        )
        log.debug("Re-keyed %s -> %s", old, new)
        return True

    # ── Read-through ─────────────────────────────────────────────────

    async def get_or_fetch(
        self,
        query: LogicalQuery,
        fetch: Fetch,
        stale_after: float | None = None,
    ) -> Outcome:
        """Return the cached outcome, or run ``fetch`` once for this key.

        Only successes are stored, so failures are re-attempted on the
        next read.
        """
        entry = self._entries.get(query)
        if entry is not None:
            log.debug("Cache hit for %s", query)
            if entry.is_stale(stale_after, self._clock()):
                self._schedule_refresh(query, fetch)
            return entry.outcome

        pending = self._inflight.get(query)
        if pending is not None:
            log.debug("Joining in-flight fetch for %s", query)
            outcome = await asyncio.shield(pending)
            if not (isinstance(outcome, FatalFailure) and outcome.cancelled):
                return outcome
            # The owner abandoned the shared fetch; read again on our own behalf.
            return await self.get_or_fetch(query, fetch, stale_after)

        task = self._spawn(query, fetch)
        return await asyncio.shield(task)

    # ── Internal helpers ─────────────────────────────────────────────

    def _spawn(self, query: LogicalQuery, fetch: Fetch) -> asyncio.Task:
        task = asyncio.ensure_future(self._run(query, fetch))
        self._inflight[query] = task
        return task

    async def _run(self, query: LogicalQuery, fetch: Fetch) -> Outcome:
        me = asyncio.current_task()
        try:
            outcome = await fetch()
            if isinstance(outcome, Success) and self._inflight.get(query) is me:
                self.put(query, outcome)
            return outcome
        finally:
            if self._inflight.get(query) is me:
                del self._inflight[query]

    def _schedule_refresh(self, query: LogicalQuery, fetch: Fetch) -> None:
        if query in self._inflight:
            return
        log.debug("Entry for %s is stale, refreshing in background", query)
        task = self._spawn(query, fetch)
        self._background.add(task)
        task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Background refresh failed: %s", exc)

    async def drain(self) -> None:
        """Wait for any background refreshes still running."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
