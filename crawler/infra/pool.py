"""
Browser pool: reuses launched browsers across many sequential page loads.

Callers borrow a :class:`PoolEntry` with :meth:`BrowserPool.acquire` (or the
:meth:`BrowserPool.borrow` context manager) and must hand it back with
:meth:`BrowserPool.release`. Bookkeeping is guarded by an ``asyncio.Lock``;
probe and close failures are logged and swallowed so they never reach the
crawl.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class Handle(Protocol):
    async def probe(self) -> bool: ...

    async def close(self) -> None: ...


@dataclass(eq=False)
class PoolEntry:
    """A pooled browser instance and its health state."""

    handle: Any
    entry_id: int
    created_at: float
    last_used: float
    healthy: bool = True
    authenticated: bool = False
    uses: int = field(default=0)

    def mark_unhealthy(self) -> None:
        self.healthy = False
        self.authenticated = False


class BrowserPool:
    """Bounded pool of long-lived browser instances."""

    def __init__(
        self,
        launcher: Callable[[], Awaitable[Handle]],
        *,
        max_size: int = 3,
        idle_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._launcher = launcher
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self._idle: List[PoolEntry] = []
        self._borrowed: Dict[int, PoolEntry] = {}
        self._ids = itertools.count(1)
        self._created = 0
        self._closed = False

    # ------------------------------------------------------------------ #
    async def acquire(self) -> PoolEntry:
        """Return a healthy idle entry, or launch a fresh one.

        Raises :class:`~crawler.errors.LaunchFailedError` only when a new
        browser cannot be started.
        """
        await self.evict_expired()

        while True:
            async with self._lock:
                if self._closed:
                    raise RuntimeError("BrowserPool is closed")
                entry = self._idle.pop() if self._idle else None
                if entry is not None:
                    self._borrowed[entry.entry_id] = entry
            if entry is None:
                break
            if await self._probe(entry):
                entry.last_used = self._clock()
                entry.uses += 1
                logger.debug("Reusing browser #%d", entry.entry_id)
                return entry
            logger.warning("Browser #%d failed health probe, discarding", entry.entry_id)
            async with self._lock:
                self._borrowed.pop(entry.entry_id, None)
            await self._close_entry(entry)

        handle = await self._launcher()
        now = self._clock()
        async with self._lock:
            entry = PoolEntry(
                handle=handle,
                entry_id=next(self._ids),
                created_at=now,
                last_used=now,
                uses=1,
            )
            self._created += 1
            closed = self._closed
            if not closed:
                self._borrowed[entry.entry_id] = entry
        if closed:
            await self._close_entry(entry)
            raise RuntimeError("BrowserPool is closed")
        logger.info("Created browser #%d for pool", entry.entry_id)
        return entry

    async def release(self, entry: PoolEntry) -> None:
        """Give an entry back; it is pooled if there is room, otherwise closed."""
        async with self._lock:
            if self._borrowed.pop(entry.entry_id, None) is None:
                logger.warning("Ignoring release of unknown browser #%d", entry.entry_id)
                return
            entry.last_used = self._clock()
            keep = not self._closed and entry.healthy and len(self._idle) < self.max_size
            if keep:
                self._idle.append(entry)
                idle = len(self._idle)
        if keep:
            logger.debug("Returned browser #%d to pool (idle: %d)", entry.entry_id, idle)
            return
        reason = "unhealthy" if not entry.healthy else "pool at max capacity"
        logger.info("Closing browser #%d (%s)", entry.entry_id, reason)
        await self._close_entry(entry)

    @asynccontextmanager
    async def borrow(self) -> AsyncIterator[PoolEntry]:
        entry = await self.acquire()
        try:
            yield entry
        finally:
            await self.release(entry)

    async def evict_expired(self) -> int:
        """Close idle entries unused for longer than ``idle_timeout``."""
        now = self._clock()
        async with self._lock:
            expired = [e for e in self._idle if now - e.last_used > self.idle_timeout]
            if not expired:
                return 0
            self._idle = [e for e in self._idle if e not in expired]
        for entry in expired:
            logger.info("Closing expired browser #%d", entry.entry_id)
            await self._close_entry(entry)
        return len(expired)

    async def close_all(self) -> None:
        """Close every idle and borrowed entry; the pool is unusable afterwards."""
        async with self._lock:
            self._closed = True
            entries = self._idle + list(self._borrowed.values())
            self._idle = []
            self._borrowed.clear()
        logger.info("Closing all browsers in pool (%d)", len(entries))
        await asyncio.gather(*(self._close_entry(e) for e in entries))

    def stats(self) -> Dict[str, int]:
        return {
            "idle": len(self._idle),
            "borrowed": len(self._borrowed),
            "max_size": self.max_size,
            "created": self._created,
        }

    # ------------------------------------------------------------------ #
    async def _probe(self, entry: PoolEntry) -> bool:
        try:
            return bool(await entry.handle.probe())
        except Exception as e:  # noqa: BLE001
            logger.debug("Probe of browser #%d raised: %s", entry.entry_id, e)
            return False

    async def _close_entry(self, entry: PoolEntry) -> None:
        entry.mark_unhealthy()
        try:
            await entry.handle.close()
        except Exception as e:  # noqa: BLE001
            logger.warning("Error closing browser #%d: %s", entry.entry_id, e)
