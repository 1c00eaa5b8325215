"""
cache/store.py -- In-process TTL cache shared by request-handling threads.

The domain resolver takes any object satisfying TTLCache, so tests and
multi-tenant deployments can give each resolver its own instance instead of a
process-wide static. MemoryTTLCache is the default implementation: a dict of
(value, expires_at) guarded by one lock. Writes are rare (one per distinct
key per TTL window), so a single mutex is enough.

Expiry uses a monotonic clock so wall-clock jumps do not resurrect or kill
entries. The clock is injectable for tests.

Usage:
    cache = MemoryTTLCache(ttl=300)
    cache.set("shop.example.com", resolved)
    cache.get("shop.example.com")   # value, or None once expired
    cache.purge_expired()           # optional housekeeping
    cache.clear()                   # drop everything
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Optional, Protocol

_DEFAULT_TTL = 5 * 60  # seconds


class TTLCache(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def clear(self) -> None: ...

    def purge_expired(self) -> int: ...


class MemoryTTLCache:
    def __init__(self, ttl: float = _DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value if present and not expired. Expired entries are dropped."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        """Store value for key, replacing any existing entry and restarting its TTL."""
        with self._lock:
            self._entries[key] = (value, self._clock() + self.ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
