# src/cache/cache_factory.py — v3
"""Factory for cache store and cache manager instantiation."""

from __future__ import annotations

from tierfetch.cache.base_cache_store import BaseCacheStore
from tierfetch.cache.manager import CacheManager
from tierfetch.config.settings import Settings
from tierfetch.core.clock import Clock
from tierfetch.tracking.metrics import MetricsCollector


def create_cache_store(
    settings: Settings | None = None, clock: Clock | None = None
) -> BaseCacheStore:
    """Instantiate the configured cache backend.

    Args:
        settings: Application settings. Defaults to the memory backend.
        clock: Optional clock override (tests).

    Returns:
        Configured BaseCacheStore implementation.
    """
    backend = "memory" if settings is None else settings.cache_backend

    if backend == "memory":
        from tierfetch.cache.memory_store import MemoryCacheStore
        return MemoryCacheStore(clock=clock)

    if backend == "file":
        from tierfetch.cache.file_store import FileCacheStore
        return FileCacheStore(cache_root=settings.cache_root, clock=clock)

    raise ValueError(f"Unsupported cache backend: {backend!r}")


def create_cache_manager(
    settings: Settings | None = None,
    store: BaseCacheStore | None = None,
    clock: Clock | None = None,
    metrics: MetricsCollector | None = None,
) -> CacheManager:
    """Build a CacheManager with limits taken from settings."""
    settings = settings or Settings(_env_file=None)
    store = store or create_cache_store(settings, clock=clock)
    return CacheManager(
        store,
        max_size_bytes=settings.max_size_bytes,
        max_items=settings.cache_max_items,
        default_ttl_ms=settings.default_ttl_ms,
        clock=clock,
        metrics=metrics,
    )
