"""
Sage - ResponseCache
=====================
In-process TTL + LRU cache for generated answers.

Design decisions:
  • **OrderedDict recency order**: ``get`` moves a hit to the end, so
    the first key is always the least-recently *accessed* entry and
    eviction is O(1).
  • **Lazy + background expiry**: an expired entry is purged when read,
    and an asyncio sweeper task purges entries nobody reads again.
  • **Owned state**: one ``ResponseCache`` instance is created by the
    ``Companion`` and passed by reference to every consumer.  All
    mutation happens under a ``threading.Lock``, so the cache is also
    safe for the ingestion thread pool.
  • **Injectable clock**: TTL arithmetic uses ``clock()`` (default
    ``time.monotonic``) so tests can advance time without sleeping.

Usage:
    cache = ResponseCache()
    key = make_cache_key("ask", "beginner", "What is XSS?")
    if (hit := cache.get(key)) is None:
        cache.set(key, result)
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sage.config.settings import settings
from sage.src.utils.logger import get_logger
from sage.src.utils.text_utils import normalize_query

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float


def make_cache_key(kind: str, level: str, query: str) -> str:
    """
    Build the cache key shared by every consumer.

    The key is ``kind:level:normalized query``.  It deliberately carries
    no user identity: answers are level-specific, not user-specific.
    """
    return f"{kind}:{level}:{normalize_query(query)}"


class ResponseCache:
    """
    Bounded key/value store with per-entry TTL and LRU eviction.

    Parameters
    ----------
    max_entries
        Capacity.  Defaults to ``settings.CACHE_MAX_ENTRIES`` (200).
    default_ttl
        Seconds an entry lives unless ``set`` overrides it.  Defaults to
        ``settings.CACHE_TTL_SECONDS`` (300).
    sweep_interval
        Seconds between background purges.
    clock
        Monotonic time source.
    """

    __slots__ = ("_entries", "_max_entries", "_default_ttl", "_sweep_interval", "_clock", "_lock", "_sweeper")

    def __init__(self, max_entries: int | None = None, default_ttl: float | None = None, sweep_interval: float | None = None, clock: Clock = time.monotonic) -> None:
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_entries = max_entries or settings.CACHE_MAX_ENTRIES
        self._default_ttl = default_ttl or settings.CACHE_TTL_SECONDS
        self._sweep_interval = sweep_interval or settings.CACHE_SWEEP_INTERVAL_SECONDS
        self._clock = clock
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task[None] | None = None


    def get(self, key: str) -> Any | None:
        """Return the live value for *key* (refreshing its recency) or ``None``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._entries[key]
                logger.debug("[CACHE] Expired on read: %s", key)
                return None
            self._entries.move_to_end(key)
            return entry.value


    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Insert or overwrite *key*, evicting the LRU entry when full."""
        expires_at = self._clock() + (ttl if ttl is not None else self._default_ttl)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("[CACHE] Evicted LRU entry: %s", evicted)
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)


    def purge_expired(self) -> int:
        """Drop every expired entry.  Returns the number purged."""
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if now > entry.expires_at]
            for key in stale:
                del self._entries[key]
            remaining = len(self._entries)
        if stale:
            logger.debug("[CACHE] Sweep purged %d expired entr(ies), %d remaining.", len(stale), remaining)
        return len(stale)


    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    # ── Background sweep ───────────────────────────────────────────────

    def start_sweeper(self) -> None:
        """Start the periodic purge task on the running event loop (idempotent)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(), name="sage-cache-sweeper")
        logger.debug("[CACHE] Sweeper started (every %.0fs).", self._sweep_interval)


    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None


    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.purge_expired()


    @property
    def stats(self) -> dict[str, int]:
        return {"size": len(self), "max_size": self._max_entries}
