"""
In-memory response cache keyed by request path and query string.

Entries never expire on their own; every write to the catalog clears the
whole cache.
"""

import logging
import threading
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


class ResponseCache:
    """Process-wide key -> JSON payload map with wholesale invalidation."""

    def __init__(self):
        self._entries: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._generation = 0
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'clears': 0,
        }

    @property
    def generation(self) -> int:
        """Bumped by every clear(). Read it before computing a payload to cache."""
        with self._lock:
            return self._generation

    def has(self, key: str) -> bool:
        with self._lock:
            found = key in self._entries
            self.cache_stats['hits' if found else 'misses'] += 1
        logger.debug("Cache %s: %s", "hit" if found else "miss", key)
        return found

    def get(self, key: str) -> Any:
        """Return the cached payload. Raises KeyError for unknown keys."""
        with self._lock:
            return self._entries[key]

    def set(self, key: str, value: Any, generation: Optional[int] = None) -> bool:
        """Store a payload and return True.

        When ``generation`` is given and the cache has been cleared since it
        was read, the payload may predate a write and is not stored.
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Cache write skipped for %s: cleared since read", key)
                return False
            self._entries[key] = value
            return True

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._generation += 1
            self.cache_stats['clears'] += 1
        logger.debug("Cache cleared (%d entries dropped)", count)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Hit/miss counters plus the current number of entries."""
        with self._lock:
            stats = self.cache_stats.copy()
            stats['size'] = len(self._entries)
        lookups = stats['hits'] + stats['misses']
        stats['hit_ratio'] = stats['hits'] / lookups if lookups else 0.0
        return stats


def cache_key(request: Request) -> str:
    """The literal path plus query string, e.g. ``/books?page=2&limit=5``."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path
