"""
Capture cache and correlation manager.

Intercepted payloads arrive asynchronously (push) while a user action wants
a specific (video, language) payload right now (pull). This module bridges
the two: a TTL-bound keyed store of captures plus a registry of waiters that
are woken when the key they wait for is captured.
"""

import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable

from cachetools import TTLCache

from subtap.errors import CacheInvalidated, CaptureTimeout
from subtap.models import InterceptedPayload, make_key

logger = logging.getLogger(__name__)

# Captures are one-shot and short-lived
DEFAULT_TTL_SECONDS = 300.0


@dataclass
class PendingWaiter:
    """
    One outstanding wait on a cache key.

    All concurrent callers waiting on the same key share this waiter and
    its future (fan-out); ``callers`` counts how many are still waiting.
    """

    key: str
    future: asyncio.Future
    registered_at: float
    callers: int = 0


class CaptureCache:
    """
    Keyed, time-bounded store of intercepted payloads with single-flight waits.

    Uses cachetools.TTLCache for expiry. There is no size bound: keys are
    scoped to the videos visited in the last few minutes and navigation
    flushes everything, so TTL is the only eviction policy.

    Args:
        ttl: Lifetime of an entry in seconds
        timer: Clock used for expiry and waiter bookkeeping. Injectable so
            tests can simulate the passage of time.
    """

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, timer: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._timer = timer
        self._entries: TTLCache = TTLCache(maxsize=sys.maxsize, ttl=ttl, timer=timer)
        self._waiters: dict[str, PendingWaiter] = {}
        self._hits = 0
        self._misses = 0

    @property
    def ttl(self) -> float:
        """Get the TTL in seconds."""
        return self._ttl

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    def __len__(self) -> int:
        self.sweep()
        return len(self._entries)

    def sweep(self) -> int:
        """
        Purge expired entries.

        Returns:
            Number of entries removed
        """
        before = len(self._entries)
        self._entries.expire()
        purged = before - len(self._entries)
        if purged:
            logger.debug(f"Swept {purged} expired capture(s)")
        return purged

    def record_capture(self, payload: InterceptedPayload) -> None:
        """
        Store a capture and wake the waiter registered for its key.

        Sweeps first, then inserts, so the entry being recorded can never be
        evicted by the sweep that accompanies it. A later capture for the
        same key overwrites the earlier one.
        """
        self.sweep()

        key = payload.cache_key
        self._entries[key] = payload
        logger.info(
            f"Recorded capture {key} ({payload.encoding_format}, {len(payload.raw_content)} chars), "
            f"{len(self._entries)} cached"
        )

        waiter = self._waiters.pop(key, None)
        if waiter is not None and not waiter.future.done():
            waiter.future.set_result(payload)
            logger.debug(f"Woke {waiter.callers} caller(s) waiting on {key}")

    def lookup(self, video_id: str, language_code: str | None = None) -> InterceptedPayload | None:
        """
        Find an unexpired capture.

        Args:
            video_id: Video to look up
            language_code: Exact language, or None for any cached language of
                the video. With several languages cached there is no defined
                winner.

        Returns:
            The payload, or None if nothing usable is cached
        """
        self.sweep()

        if language_code is not None:
            payload = self._entries.get(make_key(video_id, language_code))
        else:
            payload = next(
                (entry for entry in self._entries.values() if entry.video_id == video_id),
                None,
            )

        if payload is None:
            self._misses += 1
            return None

        self._hits += 1
        return payload

    async def wait_for(self, video_id: str, language_code: str, timeout_ms: int) -> InterceptedPayload:
        """
        Wait until the key is captured or the deadline passes.

        Resolves immediately on a cache hit. Otherwise joins (or creates) the
        waiter for the key. Every caller keeps its own deadline; the waiter is
        dropped once its last caller has left.

        Raises:
            CaptureTimeout: Nothing was captured within ``timeout_ms``
            CacheInvalidated: The cache was flushed while waiting
        """
        cached = self.lookup(video_id, language_code)
        if cached is not None:
            return cached

        key = make_key(video_id, language_code)
        waiter = self._waiters.get(key)
        if waiter is None:
            waiter = PendingWaiter(
                key=key,
                future=asyncio.get_running_loop().create_future(),
                registered_at=self._timer(),
            )
            self._waiters[key] = waiter
        waiter.callers += 1

        try:
            # shield: one caller timing out must not cancel the shared future
            return await asyncio.wait_for(asyncio.shield(waiter.future), timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.info(f"Timed out after {timeout_ms}ms waiting for capture {key}")
            raise CaptureTimeout(key, timeout_ms) from None
        finally:
            waiter.callers -= 1
            if waiter.callers <= 0 and self._waiters.get(key) is waiter:
                del self._waiters[key]
                if not waiter.future.done():
                    waiter.future.cancel()

    def invalidate_all(self) -> None:
        """Drop every capture and fail every pending waiter."""
        size = len(self._entries)
        self._entries.clear()

        waiters = list(self._waiters.values())
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(CacheInvalidated())

        logger.info(f"Cache invalidated: {size} entries removed, {len(waiters)} waiter(s) rejected")

    def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with cache size, pending waiters, hits, misses and hit rate
        """
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0
        return {
            "size": len(self),
            "pending_waiters": len(self._waiters),
            "ttl": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": hit_rate,
        }
