"""
In-process resolution cache for registry lookups.

Dependencies that share a cache key (``tf:<source>`` or
``helm:<repository>:<name>``) are resolved over the network once per run;
every later lookup for the same key reuses the stored result, failures
included. Nothing is persisted: the cache lives for one invocation.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .registry_clients import RegistryCheckResult


@dataclass
class CacheEntry:
    """Cache entry with access tracking."""

    key: str
    data: RegistryCheckResult
    created_at: float
    access_count: int = 0

    def touch(self) -> None:
        """Increment access count."""
        self.access_count += 1


class CacheStats:
    """Cache performance statistics."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.total_requests = 0

    def record_hit(self) -> None:
        """Record a cache hit."""
        self.hits += 1
        self.total_requests += 1

    def record_miss(self) -> None:
        """Record a cache miss."""
        self.misses += 1
        self.total_requests += 1

    def get_hit_rate(self) -> float:
        """Get cache hit rate as percentage."""
        if self.total_requests == 0:
            return 0.0
        return (self.hits / self.total_requests) * 100.0

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_requests": self.total_requests,
            "hit_rate_percent": self.get_hit_rate(),
        }

    def reset(self) -> None:
        """Reset all statistics."""
        self.hits = 0
        self.misses = 0
        self.total_requests = 0


class ResolutionCache:
    """
    Map from cache key to registry result, valid for a single run.

    There are no concurrent writers, so no locking or expiry is needed.
    """

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()

    def get(self, cache_key: str) -> Optional[RegistryCheckResult]:
        """
        Get the cached result for a key.

        Args:
            cache_key: Key produced by ``Dependency.cache_key``

        Returns:
            The cached RegistryCheckResult, or None on a miss
        """
        entry = self._cache.get(cache_key)
        if entry is None:
            self._stats.record_miss()
            return None

        entry.touch()
        self._stats.record_hit()
        return entry.data

    def put(self, cache_key: str, result: RegistryCheckResult) -> None:
        """Store a registry result, successful or not."""
        self._cache[cache_key] = CacheEntry(
            key=cache_key, data=result, created_at=time.time()
        )

    def __contains__(self, cache_key: str) -> bool:
        return cache_key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries removed
        """
        count = len(self._cache)
        self._cache.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics including the current number of keys."""
        stats = self._stats.get_stats()
        stats["current_size"] = len(self._cache)
        return stats

    def get_entries_info(self) -> List[Dict[str, Any]]:
        """Information about current entries, most reused first."""
        entries_info = [
            {
                "cache_key": entry.key,
                "latest_version": entry.data.version,
                "error": str(entry.data.error) if entry.data.error else None,
                "access_count": entry.access_count,
            }
            for entry in self._cache.values()
        ]
        entries_info.sort(key=lambda x: x["access_count"], reverse=True)
        return entries_info
