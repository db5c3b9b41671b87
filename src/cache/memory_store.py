# src/cache/memory_store.py — v2
"""In-process cache store (CACHE_BACKEND=memory).

Entries live in a dict keyed by URI; size and count are tracked
incrementally on put/delete. Contents are lost when the process exits.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime

from tierfetch.cache.base_cache_store import BaseCacheStore
from tierfetch.cache.models import CacheEntry, CacheFilter, Tier, content_size
from tierfetch.core.clock import Clock, utc_now
from tierfetch.core.urls import url_slug

logger = logging.getLogger(__name__)


class MemoryCacheStore(BaseCacheStore):
    """Dict-backed cache store."""

    scheme = "memory"

    def __init__(self, clock: Clock | None = None) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._size_bytes = 0
        self._lock = asyncio.Lock()
        self._clock = clock or utc_now

    def build_uri(
        self, tier: Tier, source_url: str, created_at: datetime, sequence: int
    ) -> str:
        stamp = int(created_at.timestamp() * 1000)
        return f"memory://{tier}/{url_slug(source_url)}_{stamp}_{sequence:06d}"

    async def put(self, entry: CacheEntry) -> None:
        """Store a copy of the entry, replacing any entry with the same URI."""
        stored = entry.model_copy(update={"size_bytes": content_size(entry.content)})
        async with self._lock:
            self._mark_accessed(stored, stored.last_access_at)
            previous = self._entries.get(stored.uri)
            if previous is not None:
                self._size_bytes -= previous.size_bytes
            self._entries[stored.uri] = stored
            self._size_bytes += stored.size_bytes

    async def get(self, uri: str) -> CacheEntry | None:
        entry = self._entries.get(uri)
        if entry is None:
            return None
        self._mark_accessed(entry, self._clock())
        return entry.model_copy()

    async def peek(self, uri: str) -> CacheEntry | None:
        entry = self._entries.get(uri)
        return entry.model_copy() if entry is not None else None

    async def delete(self, uri: str) -> None:
        async with self._lock:
            entry = self._entries.pop(uri, None)
            if entry is not None:
                self._size_bytes = max(0, self._size_bytes - entry.size_bytes)

    async def list_entries(
        self, entry_filter: CacheFilter | None = None
    ) -> AsyncIterator[CacheEntry]:
        snapshot = list(self._entries.values())
        for entry in snapshot:
            if entry_filter is None or entry_filter.matches(entry):
                yield entry.model_copy()

    async def total_size_bytes(self) -> int:
        return self._size_bytes

    async def item_count(self) -> int:
        return len(self._entries)
