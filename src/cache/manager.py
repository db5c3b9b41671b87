# src/cache/manager.py — v2
"""CacheManager: cache keys, tiered read/write, TTL and LRU eviction.

Expiry is lazy: an entry whose ``created_at + ttl_ms <= now`` is deleted
the first time a lookup, read or listing sees it. Size and count limits are
enforced after every write by evicting the least-recently-accessed live
entries. A background sweep (``start_cleanup``) is optional and only
reclaims space earlier; correctness does not depend on it.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable
from typing import Any

from tierfetch.cache.base_cache_store import BaseCacheStore
from tierfetch.cache.models import (
    TIERS,
    CacheEntry,
    CacheEntrySummary,
    CacheFilter,
    CacheStats,
    Tier,
    TierUris,
    content_size,
)
from tierfetch.core.clock import Clock, utc_now
from tierfetch.core.urls import normalize_url
from tierfetch.tracking.metrics import MetricsCollector

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_BYTES = 100 * 1024 * 1024
DEFAULT_MAX_ITEMS = 1000
DEFAULT_TTL_MS = 24 * 60 * 60 * 1000


def select_preferred(
    entries: Iterable[CacheEntry], extraction_query: str | None = None
) -> CacheEntry | None:
    """Pick the tier to serve from a cache hit.

    With an extraction query the extracted tier wins; otherwise cleaned,
    then extracted, then raw.
    """
    by_tier = {e.tier: e for e in entries}
    order: tuple[Tier, ...] = ("cleaned", "extracted", "raw")
    if extraction_query is not None:
        order = ("extracted", "cleaned", "raw")
    for tier in order:
        if tier in by_tier:
            return by_tier[tier]
    return None


class CacheManager:
    """Owns cache key computation and eviction policy over a store."""

    def __init__(
        self,
        store: BaseCacheStore,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        max_items: int = DEFAULT_MAX_ITEMS,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if max_size_bytes <= 0 or max_items <= 0:
            raise ValueError("max_size_bytes and max_items must be positive")
        if default_ttl_ms < 0:
            raise ValueError("default_ttl_ms must be >= 0")
        self._store = store
        self._max_size_bytes = max_size_bytes
        self._max_items = max_items
        self._default_ttl_ms = default_ttl_ms
        self._clock = clock or utc_now
        self._metrics = metrics or MetricsCollector()
        self._sequence = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def store(self) -> BaseCacheStore:
        return self._store

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    # --- Lookup ---

    async def find_by_key(
        self, source_url: str, extraction_query: str | None = None
    ) -> list[CacheEntry]:
        """Return the newest live entry per tier for a logical key.

        Expired entries seen during the scan are deleted and never returned.
        Access time is not updated.
        """
        url = normalize_url(source_url)
        now = self._clock()
        entry_filter = CacheFilter(
            source_url=url, extraction_query=extraction_query, match_query=True
        )

        newest: dict[str, CacheEntry] = {}
        expired: list[str] = []
        async for entry in self._store.list_entries(entry_filter):
            if entry.is_expired(now):
                expired.append(entry.uri)
                continue
            current = newest.get(entry.tier)
            if current is None or _recency(entry) > _recency(current):
                newest[entry.tier] = entry

        for uri in expired:
            await self._store.delete(uri)
            self._metrics.record_cache_expiration()
            logger.debug("Expired cache entry removed: %s", uri)

        return [newest[t] for t in TIERS if t in newest]

    async def read(self, uri: str) -> CacheEntry | None:
        """Read an entry by URI, updating its access time. None if missing or expired."""
        entry = await self._store.get(uri)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            await self._store.delete(uri)
            self._metrics.record_cache_expiration()
            return None
        return entry

    async def exists(self, uri: str) -> bool:
        """Check whether a live entry exists without touching access time."""
        entry = await self._store.peek(uri)
        if entry is None:
            return False
        if entry.is_expired(self._clock()):
            await self._store.delete(uri)
            self._metrics.record_cache_expiration()
            return False
        return True

    # --- Write ---

    async def write(
        self,
        source_url: str,
        extraction_query: str | None,
        tier: Tier,
        content: str | bytes,
        content_type: str = "text/plain",
        ttl_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Store one tier for a key and enforce limits. Returns the new URI.

        Raises:
            CacheBackendError: If the store cannot persist the entry.
            InvalidKeyError: If the source URL cannot be normalized.
        """
        url = normalize_url(source_url)
        async with self._write_lock:
            entry = await self._put(url, extraction_query, tier, content, content_type, ttl_ms, metadata)
            await self._enforce_limits(protect={entry.uri})
        return entry.uri

    async def write_multi(
        self,
        source_url: str,
        extraction_query: str | None,
        raw: str | bytes,
        cleaned: str | None = None,
        extracted: str | None = None,
        content_type: str = "text/plain",
        ttl_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TierUris:
        """Store every provided tier for a key in one call.

        Limits are enforced once at the end; none of the entries written by
        this call are eviction candidates.
        """
        url = normalize_url(source_url)
        uris = TierUris()
        tiers: list[tuple[Tier, str | bytes, str]] = [("raw", raw, content_type)]
        if cleaned is not None:
            tiers.append(("cleaned", cleaned, "text/markdown"))
        if extracted is not None:
            tiers.append(("extracted", extracted, "text/plain"))

        async with self._write_lock:
            for tier, body, ctype in tiers:
                entry = await self._put(url, extraction_query, tier, body, ctype, ttl_ms, metadata)
                setattr(uris, tier, entry.uri)
            await self._enforce_limits(protect=set(uris.as_dict().values()))
        return uris

    async def invalidate(self, source_url: str, extraction_query: str | None = None) -> int:
        """Delete every tier stored for a key, live or not. Returns the count."""
        url = normalize_url(source_url)
        entry_filter = CacheFilter(
            source_url=url, extraction_query=extraction_query, match_query=True
        )
        uris = [e.uri async for e in self._store.list_entries(entry_filter)]
        for uri in uris:
            await self._store.delete(uri)
        if uris:
            logger.info("Invalidated %d cache entries for %s", len(uris), url)
        return len(uris)

    # --- Maintenance ---

    async def cleanup(self) -> int:
        """Purge expired entries and enforce limits. Returns entries removed."""
        async with self._write_lock:
            return await self._enforce_limits(protect=set(), force_scan=True)

    def start_cleanup(self, interval_s: float = 60.0) -> None:
        """Start a periodic background sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup_loop(interval_s), name="tierfetch-cache-cleanup"
        )

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def stats(self) -> CacheStats:
        """Occupancy and limits, after dropping expired entries."""
        now = self._clock()
        summaries: list[CacheEntrySummary] = []
        expired: list[str] = []
        async for entry in self._store.list_entries():
            if entry.is_expired(now):
                expired.append(entry.uri)
                continue
            summaries.append(
                CacheEntrySummary(
                    uri=entry.uri,
                    source_url=entry.source_url,
                    tier=entry.tier,
                    extraction_query=entry.extraction_query,
                    size_bytes=entry.size_bytes,
                    created_at=entry.created_at,
                    last_access_at=entry.last_access_at,
                    ttl_ms=entry.ttl_ms,
                )
            )
        for uri in expired:
            await self._store.delete(uri)
            self._metrics.record_cache_expiration()

        return CacheStats(
            item_count=await self._store.item_count(),
            total_size_bytes=await self._store.total_size_bytes(),
            max_items=self._max_items,
            max_size_bytes=self._max_size_bytes,
            default_ttl_ms=self._default_ttl_ms,
            entries=summaries,
        )

    # --- Internals ---

    async def _put(
        self,
        url: str,
        extraction_query: str | None,
        tier: Tier,
        content: str | bytes,
        content_type: str,
        ttl_ms: int | None,
        metadata: dict[str, Any] | None,
    ) -> CacheEntry:
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier!r}")
        ttl = self._default_ttl_ms if ttl_ms is None else ttl_ms
        if ttl < 0:
            raise ValueError("ttl_ms must be >= 0")

        now = self._clock()
        sequence = next(self._sequence)
        entry = CacheEntry(
            uri=self._store.build_uri(tier, url, now, sequence),
            tier=tier,
            source_url=url,
            extraction_query=extraction_query,
            content=content,
            content_type=content_type,
            created_at=now,
            ttl_ms=ttl,
            last_access_at=now,
            size_bytes=content_size(content),
            sequence=sequence,
            metadata=dict(metadata or {}),
        )
        try:
            await self._store.put(entry)
        except Exception:
            self._metrics.record_cache_write_failure()
            raise
        self._metrics.record_cache_write(entry.size_bytes)
        await self._drop_superseded(entry)
        return entry

    async def _drop_superseded(self, entry: CacheEntry) -> None:
        """Remove older entries for the same (url, query, tier) triple."""
        entry_filter = CacheFilter(
            source_url=entry.source_url,
            tier=entry.tier,
            extraction_query=entry.extraction_query,
            match_query=True,
        )
        stale = [
            e.uri async for e in self._store.list_entries(entry_filter)
            if e.uri != entry.uri
        ]
        for uri in stale:
            await self._store.delete(uri)

    async def _enforce_limits(self, protect: set[str], force_scan: bool = False) -> int:
        """Evict least-recently-accessed live entries until within limits."""
        count = await self._store.item_count()
        size = await self._store.total_size_bytes()
        if not force_scan and count <= self._max_items and size <= self._max_size_bytes:
            return 0

        now = self._clock()
        removed = 0
        candidates: list[CacheEntry] = []
        async for entry in self._store.list_entries():
            if entry.uri in protect:
                continue
            if entry.is_expired(now):
                await self._store.delete(entry.uri)
                self._metrics.record_cache_expiration()
                count -= 1
                size -= entry.size_bytes
                removed += 1
                continue
            candidates.append(entry)

        candidates.sort(key=lambda e: (e.last_access_at, e.access_sequence, e.sequence))
        for entry in candidates:
            if count <= self._max_items and size <= self._max_size_bytes:
                break
            await self._store.delete(entry.uri)
            self._metrics.record_cache_eviction()
            count -= 1
            size -= entry.size_bytes
            removed += 1
            logger.debug("Evicted LRU cache entry: %s", entry.uri)

        if count > self._max_items or size > self._max_size_bytes:
            logger.warning(
                "Cache still over limits after eviction (items=%d/%d, bytes=%d/%d)",
                count, self._max_items, size, self._max_size_bytes,
            )
        return removed

    async def _cleanup_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                removed = await self.cleanup()
            except Exception:
                logger.exception("Background cache cleanup failed")
                continue
            if removed:
                logger.info("Background cleanup removed %d cache entries", removed)


def _recency(entry: CacheEntry) -> tuple:
    return (entry.created_at, entry.sequence)
