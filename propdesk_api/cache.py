"""
In-memory TTL cache for GET responses.

Entries are keyed by endpoint plus sorted query parameters. Expired entries
are evicted lazily when read; there is no background sweep.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode


logger = logging.getLogger("propdesk_api")

DEFAULT_TTL = 300.0


@dataclass
class CacheEntry:
    """A single cached response."""

    key: str
    value: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class CacheStore:
    """
    TTL key/value store.

    Usage:
        cache = CacheStore(default_ttl=60)
        key = cache.build_key("/properties", {"city": "Lisbon"})
        if (data := cache.get(key)) is None:
            data = await fetch()
            cache.set(key, data)
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._clock = clock

    @staticmethod
    def build_key(endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Build a cache key that does not depend on parameter order."""
        query = urlencode(sorted((str(k), str(v)) for k, v in (params or {}).items()))
        return f"{endpoint}?{query}"

    def get(self, key: str) -> Any:
        """Return the cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug("Cache expired: %s", key)
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value with an explicit or default ttl (seconds)."""
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
        )

    def invalidate(self, pattern: Optional[str] = None) -> int:
        """
        Remove entries whose key contains `pattern`, or everything when no
        pattern is given. Returns the number of entries removed.
        """
        if not pattern:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        stale = [key for key in self._entries if pattern in key]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Cache invalidated %d entries matching %r", len(stale), pattern)
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def resource_family(endpoint: str) -> str:
    """First path segment of an endpoint: '/properties/12?x=1' -> 'properties'."""
    path = endpoint.split("?", 1)[0]
    return path.lstrip("/").split("/", 1)[0]
