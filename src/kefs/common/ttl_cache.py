"""TTL cache for HTTP responses."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


class TtlCache(Generic[T]):
    """Small in-memory cache with per-entry expiry and a size bound.

    Used to avoid fetching the same ``maven-metadata.xml`` several times
    while one bundle is being resolved.
    """

    def __init__(self, default_ttl: float, max_entries: int = 1000):
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._cache: Dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> Optional[T]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._cache[key]
            return None
        return entry.value

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        if len(self._cache) >= self._max_entries:
            self._evict()
        expires = time.time() + (self._default_ttl if ttl is None else ttl)
        self._cache[key] = CacheEntry(value=value, expires_at=expires)

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def _evict(self) -> None:
        """Drop expired entries, then the oldest ones if still full."""
        expired = [k for k, v in self._cache.items() if v.is_expired()]
        for key in expired:
            del self._cache[key]
        if len(self._cache) < self._max_entries:
            return
        oldest = sorted(self._cache.items(), key=lambda item: item[1].created_at)
        for key, _ in oldest[: max(1, len(oldest) // 10)]:
            del self._cache[key]
