# src/api/facade.py — v2
"""Public API facade: one object wiring cache, strategy table and fetchers.

Usage:
    from tierfetch.api.facade import create_service
    async with create_service() as service:
        result = await service.fetch("https://example.com/docs/page")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tierfetch.cache.cache_factory import create_cache_manager
from tierfetch.cache.models import CacheStats
from tierfetch.config.settings import Settings
from tierfetch.strategy.models import FetchOptions, FetchResult, StrategyRecord
from tierfetch.strategy.resolver import Cleaner, Extractor, StrategyResolver
from tierfetch.strategy.store import BaseStrategyStore, FileStrategyStore, MemoryStrategyStore
from tierfetch.tracking.metrics import MetricsCollector
from tierfetch.tracking.models import MetricsSnapshot

if TYPE_CHECKING:
    from tierfetch.cache.base_cache_store import BaseCacheStore
    from tierfetch.core.clock import Clock
    from tierfetch.strategy.base_fetcher import BaseFetcher

logger = logging.getLogger(__name__)


class TierFetchService:
    """Cache-first content retrieval with learned per-prefix strategies."""

    def __init__(self, resolver: StrategyResolver, settings: Settings) -> None:
        self._resolver = resolver
        self._settings = settings

    @property
    def resolver(self) -> StrategyResolver:
        return self._resolver

    @property
    def settings(self) -> Settings:
        return self._settings

    async def fetch(
        self,
        url: str,
        extraction_query: str | None = None,
        options: FetchOptions | None = None,
    ) -> FetchResult:
        """Return the best cached tier or fetch, process and cache the URL."""
        return await self._resolver.resolve_and_fetch(url, extraction_query, options)

    async def invalidate(self, url: str, extraction_query: str | None = None) -> int:
        return await self._resolver.invalidate(url, extraction_query)

    async def stats(self) -> CacheStats | None:
        cache = self._resolver.cache
        return await cache.stats() if cache is not None else None

    def metrics(self) -> MetricsSnapshot:
        return self._resolver.metrics.snapshot()

    async def list_strategies(self) -> list[StrategyRecord]:
        return await self._resolver.strategy_store.list_records()

    async def set_strategy(
        self, prefix: str, strategy: str, note: str | None = None
    ) -> StrategyRecord:
        """Seed or override the strategy for an exact prefix."""
        return await self._resolver.strategy_store.record_prefix(prefix, strategy, note)

    async def aclose(self) -> None:
        await self._resolver.aclose()

    async def __aenter__(self) -> TierFetchService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def create_service(
    settings: Settings | None = None,
    fetchers: list[BaseFetcher] | None = None,
    cache_store: BaseCacheStore | None = None,
    strategy_store: BaseStrategyStore | None = None,
    cleaner: Cleaner | None = None,
    extractor: Extractor | None = None,
    clock: Clock | None = None,
    start_cleanup: bool | None = None,
) -> TierFetchService:
    """Build a service from settings.

    Args:
        settings: Global settings. Loaded from .env if None.
        fetchers: Fetch strategies. Defaults to the httpx native fetcher;
            cascade entries without a fetcher fail as ``not_configured``.
        cache_store: Cache backend override. None = backend from settings.
        strategy_store: Strategy table override. None = file table when
            ``strategy_store_path`` is set, in-memory otherwise.
        cleaner: Async ``(raw, url) -> markdown`` for the cleaned tier.
        extractor: Async ``(content, query) -> text`` for the extracted tier.
        clock: Wall clock override (tests).
        start_cleanup: Start periodic cleanup. None = ``cache_cleanup_enabled``.
            Requires a running event loop.

    Returns:
        Ready TierFetchService. Close it with ``aclose()``.
    """
    settings = settings or Settings()
    metrics = MetricsCollector()
    cache = create_cache_manager(settings, store=cache_store, clock=clock, metrics=metrics)

    if strategy_store is None:
        if settings.strategy_store_path is not None:
            strategy_store = FileStrategyStore(settings.strategy_store_path, clock=clock)
        else:
            strategy_store = MemoryStrategyStore(clock=clock)

    if fetchers is None:
        from tierfetch.fetchers.native import NativeFetcher

        fetchers = [
            NativeFetcher(
                user_agent=settings.fetch_user_agent,
                trust_env=settings.fetch_trust_env,
            )
        ]

    resolver = StrategyResolver(
        fetchers,
        strategy_store,
        cache=cache,
        cascade=settings.cascade_order_list,
        default_timeout_s=settings.fetch_timeout_s,
        cleaner=cleaner,
        extractor=extractor,
        metrics=metrics,
        clock=clock,
    )

    if start_cleanup is None:
        start_cleanup = settings.cache_cleanup_enabled
    if start_cleanup:
        cache.start_cleanup(settings.cache_cleanup_interval_s)

    logger.info(
        "Service ready: backend=%s, cascade=%s, strategies=%s",
        settings.cache_backend,
        ",".join(resolver.cascade),
        type(strategy_store).__name__,
    )
    return TierFetchService(resolver, settings)
