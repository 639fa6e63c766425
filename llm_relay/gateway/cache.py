"""Response Cache — in-memory TTL store with lazy eviction.

Entries expire ``ttl_ms`` after they are stored. There is no sweep
thread: an expired entry is evicted by the ``get`` that finds it.

Size is unbounded; long-running processes that cache many distinct
payloads should call ``clear()`` or disable caching.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from llm_relay.core.metrics import CACHE_LOOKUPS

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Single cached value with its storage window (milliseconds)."""

    key: str
    value: Any
    stored_at: float
    expires_at: float

    def is_expired(self, now_ms: float) -> bool:
        return now_ms >= self.expires_at


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class ResponseCache:
    """TTL key-value store shared by concurrent dispatches.

    Usage:
        cache = ResponseCache(default_ttl_ms=60_000)
        cache.set("key", response)
        cached = cache.get("key")  # None once expired
    """

    def __init__(
        self,
        default_ttl_ms: int = 60 * 60 * 1000,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                CACHE_LOOKUPS.labels(result="miss").inc()
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                CACHE_LOOKUPS.labels(result="expired").inc()
                return None

        CACHE_LOOKUPS.labels(result="hit").inc()
        return entry.value

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        """Store a value. A non-positive TTL stores nothing."""
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        if ttl <= 0:
            return

        now = self._clock()
        entry = CacheEntry(key=key, value=value, stored_at=now, expires_at=now + ttl)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> int:
        """Drop every entry. Returns the number of entries removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Cache cleared (%d entries)", count)
        return count

    def __len__(self) -> int:
        """Stored entries, including expired ones not yet evicted."""
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        # Read-only: no eviction, no lookup metrics
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())
