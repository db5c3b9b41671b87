# src/cache/base_cache_store.py — v3
"""Abstract cache store interface.

Stores hold entries keyed by URI and keep size/count accounting. They carry
no expiry or eviction policy; that belongs to CacheManager.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime

from tierfetch.cache.models import CacheEntry, CacheFilter, Tier


class BaseCacheStore(ABC):
    """Unified interface for cache storage backends."""

    scheme: str = ""
    _access_sequence: int = 0

    @abstractmethod
    def build_uri(
        self, tier: Tier, source_url: str, created_at: datetime, sequence: int
    ) -> str:
        """Return the URI a new entry for this key would be stored under."""

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Write or overwrite an entry by URI, atomically."""

    @abstractmethod
    async def get(self, uri: str) -> CacheEntry | None:
        """Return the entry and update its last_access_at, or None."""

    @abstractmethod
    async def peek(self, uri: str) -> CacheEntry | None:
        """Return the entry without touching last_access_at, or None."""

    @abstractmethod
    async def delete(self, uri: str) -> None:
        """Remove an entry. Deleting a missing URI is not an error."""

    @abstractmethod
    def list_entries(
        self, entry_filter: CacheFilter | None = None
    ) -> AsyncIterator[CacheEntry]:
        """Lazily yield entries matching the filter (single pass)."""

    @abstractmethod
    async def total_size_bytes(self) -> int:
        """Sum of size_bytes over all stored entries."""

    @abstractmethod
    async def item_count(self) -> int:
        """Number of stored entries."""

    async def exists(self, uri: str) -> bool:
        """Check presence without touching access time."""
        return await self.peek(uri) is not None

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""

    def _mark_accessed(self, entry: CacheEntry, at: datetime) -> None:
        """Stamp an entry as the most recently accessed one in this store.

        ``access_sequence`` orders accesses that share a ``last_access_at``.
        """
        self._access_sequence += 1
        entry.last_access_at = at
        entry.access_sequence = self._access_sequence

    def _observe_access_sequence(self, entry: CacheEntry) -> None:
        """Keep the counter ahead of sequences persisted by earlier processes."""
        if entry.access_sequence > self._access_sequence:
            self._access_sequence = entry.access_sequence
