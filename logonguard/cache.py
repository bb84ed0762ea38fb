"""In-memory TTL cache.

Used for per-tab response headers: headers are observed once, when the
response arrives, and consumed later when the page snapshot is analyzed.

Supports:
- Per-entry TTL with a default
- A hard entry limit (oldest entries evicted first)
- Prefix deletion, so all entries of a closed tab go at once
- Thread-safe operations
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from .constants import HEADER_CACHE_MAX_ENTRIES, HEADER_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class CacheEntry:
    """Represents a cached value with timestamp."""

    __slots__ = ("value", "timestamp", "ttl_seconds")

    def __init__(self, value: Any, timestamp: float, ttl_seconds: Optional[float] = None):
        self.value = value
        self.timestamp = timestamp
        self.ttl_seconds = ttl_seconds

    def is_expired(self, default_ttl: float, now: float) -> bool:
        """Check if this entry has expired."""
        ttl = self.ttl_seconds if self.ttl_seconds is not None else default_ttl
        return now - self.timestamp >= ttl


class TTLCache:
    """
    Bounded memory cache with expiry.

    Usage:
        cache = TTLCache(ttl_seconds=300, max_entries=100, namespace="headers")
        cache.set("12:https://example.com/", headers)
        cached = cache.get("12:https://example.com/")
        cache.delete_prefix("12:")
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 1000,
        namespace: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.namespace = namespace
        self._clock = clock
        self._memory: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()

    def _make_key(self, key: str) -> str:
        """Generate full cache key with namespace."""
        if self.namespace:
            return f"{self.namespace}:{key}"
        return key

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None if missing or expired."""
        full_key = self._make_key(key)
        with self._lock:
            entry = self._memory.get(full_key)
            if entry is None:
                return None
            if entry.is_expired(self.ttl_seconds, self._clock()):
                del self._memory[full_key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Set cached value, evicting expired and then oldest entries past the limit."""
        full_key = self._make_key(key)
        with self._lock:
            self._memory.pop(full_key, None)
            self._memory[full_key] = CacheEntry(value, self._clock(), ttl_seconds)
            if len(self._memory) > self.max_entries:
                self._purge_expired()
            while len(self._memory) > self.max_entries:
                evicted, _ = self._memory.popitem(last=False)
                logger.debug("Cache full; evicted %s", evicted)

    def delete(self, key: str) -> None:
        """Delete cached value."""
        with self._lock:
            self._memory.pop(self._make_key(key), None)

    def delete_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with prefix; returns the count."""
        full_prefix = self._make_key(prefix)
        with self._lock:
            doomed = [k for k in self._memory if k.startswith(full_prefix)]
            for k in doomed:
                del self._memory[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._memory.items() if e.is_expired(self.ttl_seconds, now)]
        for k in expired:
            del self._memory[k]

    def __len__(self) -> int:
        with self._lock:
            return len(self._memory)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "namespace": self.namespace,
                "ttl_seconds": self.ttl_seconds,
                "max_entries": self.max_entries,
                "entries": len(self._memory),
            }


def create_header_cache(clock: Callable[[], float] = time.monotonic) -> TTLCache:
    """Create the per-tab response header cache (5 minutes, 100 entries)."""
    return TTLCache(
        ttl_seconds=HEADER_CACHE_TTL_SECONDS,
        max_entries=HEADER_CACHE_MAX_ENTRIES,
        namespace="headers",
        clock=clock,
    )
