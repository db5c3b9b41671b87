# src/strategy/resolver.py — v2
"""Strategy resolution: cache lookup, fetch cascade, learning, coalescing.

Per request the resolver moves through
``ConfiguredAttempt -> CascadeAttempt(i) -> Resolved | Exhausted``:

1. An explicit strategy (request option) or the strategy learned for the
   URL's prefix is tried first.
2. If it fails, or none is known, the default cascade runs in order. A
   failed configured strategy is never fatal; the whole cascade still runs.
3. The first success wins and is recorded for the prefix. Later strategies
   are not tried, even if they might return different content.
4. If every attempt fails, CascadeExhaustedError carries every attempt.

Attempts are strictly sequential within a request. Identical in-flight
requests (same normalized URL and extraction query) share one execution.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence

from tierfetch.cache.manager import CacheManager, select_preferred
from tierfetch.cache.models import TierUris
from tierfetch.core.clock import Clock, utc_now
from tierfetch.core.errors import (
    CacheBackendError,
    CascadeExhaustedError,
    FetchError,
    normalize_error_kind,
)
from tierfetch.core.urls import normalize_url
from tierfetch.logging.context import set_request_context, strategy_context
from tierfetch.strategy.base_fetcher import BaseFetcher, classify_error
from tierfetch.strategy.models import (
    AttemptSource,
    FetchAttempt,
    FetchDiagnostics,
    FetchedContent,
    FetchOptions,
    FetchResult,
    ResolvedContent,
)
from tierfetch.strategy.store import BaseStrategyStore
from tierfetch.tracking.metrics import MetricsCollector

logger = logging.getLogger(__name__)

Cleaner = Callable[[str, str], Awaitable[str]]
Extractor = Callable[[str, str], Awaitable[str]]

DEFAULT_CASCADE: tuple[str, ...] = ("native", "enhanced")
DEFAULT_TIMEOUT_S = 30.0

_InflightKey = tuple[str, str | None]


class StrategyResolver:
    """Resolves URLs through learned strategies and a fallback cascade."""

    def __init__(
        self,
        fetchers: Mapping[str, BaseFetcher] | Iterable[BaseFetcher],
        strategy_store: BaseStrategyStore,
        cache: CacheManager | None = None,
        cascade: Sequence[str] = DEFAULT_CASCADE,
        default_timeout_s: float = DEFAULT_TIMEOUT_S,
        cleaner: Cleaner | None = None,
        extractor: Extractor | None = None,
        metrics: MetricsCollector | None = None,
        clock: Clock | None = None,
        monotonic: Callable[[], float] = time.perf_counter,
    ) -> None:
        if isinstance(fetchers, Mapping):
            self._fetchers = dict(fetchers)
        else:
            self._fetchers = {f.name: f for f in fetchers}
        if not cascade:
            raise ValueError("cascade must name at least one strategy")
        if default_timeout_s <= 0:
            raise ValueError("default_timeout_s must be > 0")

        self._store = strategy_store
        self._cache = cache
        self._cascade = tuple(cascade)
        self._default_timeout_s = default_timeout_s
        self._cleaner = cleaner
        self._extractor = extractor
        self._metrics = metrics or (cache.metrics if cache is not None else MetricsCollector())
        self._clock = clock or utc_now
        self._monotonic = monotonic
        self._inflight: dict[_InflightKey, asyncio.Future[FetchResult]] = {}

    @property
    def cascade(self) -> tuple[str, ...]:
        return self._cascade

    @property
    def strategy_store(self) -> BaseStrategyStore:
        return self._store

    @property
    def cache(self) -> CacheManager | None:
        return self._cache

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def inflight_count(self) -> int:
        return len(self._inflight)

    # --- Public API ---

    async def resolve_and_fetch(
        self,
        source_url: str,
        extraction_query: str | None = None,
        options: FetchOptions | None = None,
    ) -> FetchResult:
        """Serve from cache or run the cascade, process and store all tiers.

        Raises:
            InvalidKeyError: If the URL cannot be normalized.
            CascadeExhaustedError: If every strategy failed.
        """
        options = options or FetchOptions()
        url = normalize_url(source_url)
        set_request_context(url)

        if self._cache is not None and not options.force_refetch:
            cached = await self._lookup_cache(self._cache, url, extraction_query)
            if cached is not None:
                return cached

        key: _InflightKey = (url, extraction_query)
        pending = self._inflight.get(key)
        if pending is not None:
            self._metrics.record_coalesced()
            logger.debug("Joining in-flight resolution for %s", url)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._fetch_and_store(url, extraction_query, options))
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._release(key, t))
        return await asyncio.shield(task)

    async def invalidate(self, source_url: str, extraction_query: str | None = None) -> int:
        """Drop every cached tier for a key."""
        if self._cache is None:
            return 0
        return await self._cache.invalidate(source_url, extraction_query)

    async def resolve(
        self,
        url: str,
        timeout_s: float | None = None,
        strategy: str | None = None,
    ) -> ResolvedContent:
        """Run the strategy cascade for a URL, without touching the cache.

        Raises:
            CascadeExhaustedError: If every attempt failed.
        """
        url = normalize_url(url)
        timeout = timeout_s or self._default_timeout_s
        diagnostics = FetchDiagnostics()
        started = self._monotonic()

        first: tuple[str, AttemptSource] | None = None
        if strategy:
            first = (strategy, "explicit")
        else:
            configured = await self._configured_strategy(url)
            if configured:
                diagnostics.configured_strategy = configured
                first = (configured, "configured")

        failed_first: str | None = None
        if first is not None:
            name, source = first
            fetched = await self._attempt(name, source, url, timeout, diagnostics)
            if fetched is not None:
                if source == "configured":
                    await self._learn(url, name, None)
                return self._resolved(url, name, fetched, diagnostics, started)
            failed_first = name
            logger.info(
                "%s strategy '%s' failed for %s, falling back to cascade",
                source.capitalize(), name, url,
            )

        previous = failed_first
        for name in self._cascade:
            if previous is not None:
                self._metrics.record_fallback(previous, name)
            fetched = await self._attempt(name, "cascade", url, timeout, diagnostics)
            if fetched is not None:
                note = (
                    f"Auto-discovered after {failed_first} failed"
                    if failed_first
                    else "Auto-discovered via cascade"
                )
                await self._learn(url, name, note)
                return self._resolved(url, name, fetched, diagnostics, started)
            previous = name

        diagnostics.total_duration_ms = self._elapsed_ms(started)
        self._metrics.record_exhausted()
        error = CascadeExhaustedError(url, diagnostics)
        logger.warning("%s", error)
        raise error

    async def aclose(self) -> None:
        """Stop background work and close fetchers and the cache store."""
        for fetcher in self._fetchers.values():
            await fetcher.aclose()
        if self._cache is not None:
            await self._cache.stop_cleanup()
            await self._cache.store.close()

    # --- Cache ---

    async def _lookup_cache(
        self, cache: CacheManager, url: str, extraction_query: str | None
    ) -> FetchResult | None:
        try:
            entries = await cache.find_by_key(url, extraction_query)
            preferred = select_preferred(entries, extraction_query)
            entry = await cache.read(preferred.uri) if preferred is not None else None
        except CacheBackendError as e:
            logger.warning("Cache lookup failed for %s, fetching fresh: %s", url, e)
            self._metrics.record_cache_miss()
            return None

        if entry is None:
            self._metrics.record_cache_miss()
            logger.debug("Cache miss for %s", url)
            return None

        self._metrics.record_cache_hit()
        logger.info("Cache hit for %s (tier=%s)", url, entry.tier)
        uris = TierUris(**{e.tier: e.uri for e in entries})
        return FetchResult(
            source_url=url,
            extraction_query=extraction_query,
            content=entry.content,
            tier=entry.tier,
            uris=uris,
            from_cache=True,
            source_strategy=entry.metadata.get("strategy"),
        )

    async def _fetch_and_store(
        self, url: str, extraction_query: str | None, options: FetchOptions
    ) -> FetchResult:
        resolved = await self.resolve(url, timeout_s=options.timeout_s, strategy=options.strategy)
        raw = resolved.fetched.content

        cleaned = await self._clean(raw, url) if options.clean else None
        extracted = None
        cache_query = extraction_query
        if extraction_query is not None:
            extracted = await self._extract(cleaned if cleaned is not None else raw, extraction_query, url)
            if extracted is None:
                # Keep raw/cleaned cached, but let the next request retry extraction.
                cache_query = None

        if extracted is not None:
            content, tier = extracted, "extracted"
        elif cleaned is not None:
            content, tier = cleaned, "cleaned"
        else:
            content, tier = raw, "raw"

        uris = TierUris()
        cache_error: str | None = None
        if self._cache is not None:
            try:
                uris = await self._cache.write_multi(
                    url,
                    cache_query,
                    raw=raw,
                    cleaned=cleaned,
                    extracted=extracted,
                    content_type=resolved.fetched.content_type,
                    ttl_ms=options.ttl_ms,
                    metadata={"strategy": resolved.strategy},
                )
            except CacheBackendError as e:
                cache_error = str(e)
                logger.error("Cache write failed for %s, returning uncached content: %s", url, e)

        return FetchResult(
            source_url=url,
            extraction_query=extraction_query,
            content=content,
            tier=tier,
            uris=uris,
            from_cache=False,
            source_strategy=resolved.strategy,
            diagnostics=resolved.diagnostics,
            cache_error=cache_error,
        )

    # --- Processing ---

    async def _clean(self, raw: str | bytes, url: str) -> str | None:
        if self._cleaner is None or not isinstance(raw, str):
            return None
        try:
            return await self._cleaner(raw, url) or None
        except Exception as e:
            logger.warning("Cleaning failed for %s, keeping raw content: %s", url, e)
            return None

    async def _extract(self, content: str | bytes, query: str, url: str) -> str | None:
        if self._extractor is None:
            logger.warning("Extraction requested for %s but no extractor is configured", url)
            return None
        if not isinstance(content, str):
            logger.warning("Extraction skipped for %s: binary content", url)
            return None
        try:
            return await self._extractor(content, query) or None
        except Exception as e:
            logger.warning("Extraction failed for %s: %s", url, e)
            return None

    # --- Attempts ---

    async def _attempt(
        self,
        name: str,
        source: AttemptSource,
        url: str,
        timeout_s: float,
        diagnostics: FetchDiagnostics,
    ) -> FetchedContent | None:
        started_at = self._clock()
        t0 = self._monotonic()
        fetched: FetchedContent | None = None
        error: FetchError | None = None

        with strategy_context(name):
            fetcher = self._fetchers.get(name)
            if fetcher is None:
                error = FetchError(
                    "not_configured", f"no fetcher registered for '{name}'", strategy=name
                )
            else:
                try:
                    fetched = await asyncio.wait_for(fetcher.attempt(url, timeout_s), timeout_s)
                    if not fetched.content:
                        fetched = None
                        error = FetchError("empty", "empty response body", strategy=name)
                except FetchError as e:
                    error = e
                except asyncio.TimeoutError:
                    error = FetchError("timeout", f"timed out after {timeout_s:g}s", strategy=name)
                except Exception as e:
                    error = FetchError(classify_error(e), f"{type(e).__name__}: {e}", strategy=name)

            duration_ms = self._elapsed_ms(t0)
            kind = normalize_error_kind(error.kind) if error is not None else None
            if error is None:
                logger.debug("Strategy '%s' succeeded for %s in %dms", name, url, duration_ms)
            else:
                logger.info(
                    "Strategy '%s' failed for %s: %s (%dms)", name, url, kind, duration_ms
                )

        diagnostics.attempts.append(
            FetchAttempt(
                strategy=name,
                source=source,
                started_at=started_at,
                duration_ms=duration_ms,
                outcome="success" if error is None else "error",
                error_kind=kind,
                error_message=_error_message(error),
            )
        )
        self._metrics.record_attempt(name, error is None, duration_ms, kind)
        return fetched

    # --- Learning ---

    async def _configured_strategy(self, url: str) -> str | None:
        try:
            return await self._store.lookup(url)
        except CacheBackendError as e:
            logger.warning("Strategy lookup failed for %s: %s", url, e)
            return None

    async def _learn(self, url: str, strategy: str, note: str | None) -> None:
        try:
            await self._store.record(url, strategy, note)
        except CacheBackendError as e:
            logger.warning("Failed to record strategy '%s' for %s: %s", strategy, url, e)

    # --- Helpers ---

    def _resolved(
        self,
        url: str,
        strategy: str,
        fetched: FetchedContent,
        diagnostics: FetchDiagnostics,
        started: float,
    ) -> ResolvedContent:
        diagnostics.chosen_strategy = strategy
        diagnostics.total_duration_ms = self._elapsed_ms(started)
        return ResolvedContent(url=url, strategy=strategy, fetched=fetched, diagnostics=diagnostics)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._monotonic() - started) * 1000))

    def _release(self, key: _InflightKey, task: asyncio.Future[FetchResult]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers still receive it.
            task.exception()


def _error_message(error: FetchError | None) -> str | None:
    """Attempt message, keeping a fetcher's own kind when it was not recognised."""
    if error is None:
        return None
    raw_kind = getattr(error, "raw_kind", error.kind)
    if normalize_error_kind(raw_kind) == "unknown" and raw_kind != "unknown":
        return f"[{raw_kind}] {error.message}"
    return error.message
