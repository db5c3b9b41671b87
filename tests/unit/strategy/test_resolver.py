# tests/unit/strategy/test_resolver.py — v2
"""Tests for strategy/resolver.py — cascade, learning, caching, coalescing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from tests.conftest import ScriptedFetcher
from tierfetch.core.errors import (
    CacheBackendError,
    CascadeExhaustedError,
    FetchError,
    InvalidKeyError,
)
from tierfetch.strategy.models import FetchOptions
from tierfetch.strategy.resolver import StrategyResolver

URL = "https://yelp.com/biz/dolly-san-francisco"


def _resolver(fetchers, strategy_store, cache=None, **kwargs) -> StrategyResolver:
    kwargs.setdefault("cascade", ("native", "enhanced"))
    return StrategyResolver(fetchers, strategy_store, cache=cache, **kwargs)


async def _wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestConstruction:
    def test_empty_cascade_rejected(self, strategy_store):
        with pytest.raises(ValueError):
            StrategyResolver([], strategy_store, cascade=())

    def test_non_positive_timeout_rejected(self, strategy_store):
        with pytest.raises(ValueError):
            StrategyResolver([], strategy_store, default_timeout_s=0)

    def test_fetchers_by_mapping_or_list(self, strategy_store):
        native = ScriptedFetcher("native", "x")
        a = StrategyResolver({"plain": native}, strategy_store)
        b = StrategyResolver([native], strategy_store)
        assert a._fetchers == {"plain": native}
        assert b._fetchers == {"native": native}


class TestResolveCascade:
    @pytest.mark.asyncio
    async def test_blocked_native_falls_through_to_enhanced_and_learns(self, strategy_store):
        native = ScriptedFetcher("native", error_kind="blocked")
        enhanced = ScriptedFetcher("enhanced", "<html>rendered</html>")
        resolver = _resolver([native, enhanced], strategy_store)

        resolved = await resolver.resolve(URL)

        diag = resolved.diagnostics
        assert resolved.strategy == "enhanced"
        assert diag.chosen_strategy == "enhanced"
        assert diag.strategies_attempted == ["native", "enhanced"]
        assert diag.attempts[0].error_kind == "blocked"
        assert diag.attempts[1].outcome == "success"
        assert await strategy_store.lookup(URL) == "enhanced"
        record = await strategy_store.get("yelp.com/biz/")
        assert record.note == "Auto-discovered via cascade"

    @pytest.mark.asyncio
    async def test_first_success_wins(self, strategy_store):
        native = ScriptedFetcher("native", "plain")
        enhanced = ScriptedFetcher("enhanced", "rendered")
        resolver = _resolver([native, enhanced], strategy_store)

        resolved = await resolver.resolve(URL)

        assert resolved.fetched.content == "plain"
        assert enhanced.calls == []
        assert await strategy_store.lookup(URL) == "native"

    @pytest.mark.asyncio
    async def test_configured_strategy_tried_first(self, strategy_store):
        await strategy_store.record(URL, "enhanced", "seeded")
        native = ScriptedFetcher("native", "plain")
        enhanced = ScriptedFetcher("enhanced", "rendered")
        resolver = _resolver([native, enhanced], strategy_store)

        resolved = await resolver.resolve(URL)

        assert resolved.strategy == "enhanced"
        assert native.calls == []
        assert resolved.diagnostics.configured_strategy == "enhanced"
        assert resolved.diagnostics.attempts[0].source == "configured"
        assert (await strategy_store.get("yelp.com/biz/")).note == "seeded"

    @pytest.mark.asyncio
    async def test_failed_configured_strategy_runs_full_cascade(self, strategy_store, metrics):
        await strategy_store.record(URL, "enhanced")
        native = ScriptedFetcher("native", error_kind="server_error")
        enhanced = ScriptedFetcher("enhanced", error_kind="timeout")
        fallback = ScriptedFetcher("archive", "archived copy")
        resolver = _resolver(
            [native, enhanced, fallback], strategy_store,
            cascade=("native", "enhanced", "archive"), metrics=metrics,
        )

        resolved = await resolver.resolve(URL)

        attempts = resolved.diagnostics.attempts
        assert [(a.strategy, a.source) for a in attempts] == [
            ("enhanced", "configured"),
            ("native", "cascade"),
            ("enhanced", "cascade"),
            ("archive", "cascade"),
        ]
        record = await strategy_store.get("yelp.com/biz/")
        assert record.strategy == "archive"
        assert record.note == "Auto-discovered after enhanced failed"
        strategies = metrics.strategy_metrics()
        assert strategies["enhanced"].failure_count == 2
        assert strategies["enhanced"].fallback_count == 2
        assert strategies["native"].fallback_count == 1

    @pytest.mark.asyncio
    async def test_explicit_strategy_outranks_configured_and_is_not_learned(self, strategy_store):
        await strategy_store.record(URL, "native")
        native = ScriptedFetcher("native", "plain")
        enhanced = ScriptedFetcher("enhanced", "rendered")
        resolver = _resolver([native, enhanced], strategy_store)

        resolved = await resolver.resolve(URL, strategy="enhanced")

        assert resolved.strategy == "enhanced"
        assert resolved.diagnostics.attempts[0].source == "explicit"
        assert native.calls == []
        assert await strategy_store.lookup(URL) == "native"

    @pytest.mark.asyncio
    async def test_exhausted_cascade_reports_every_attempt(self, strategy_store, metrics):
        native = ScriptedFetcher("native", error_kind="blocked")
        enhanced = ScriptedFetcher("enhanced", error_kind="not_found")
        resolver = _resolver([native, enhanced], strategy_store, metrics=metrics)

        with pytest.raises(CascadeExhaustedError) as exc_info:
            await resolver.resolve(URL)

        err = exc_info.value
        assert [(a.strategy, a.error_kind) for a in err.attempts] == [
            ("native", "blocked"),
            ("enhanced", "not_found"),
        ]
        assert "native: blocked" in str(err)
        assert await strategy_store.lookup(URL) is None
        assert metrics.snapshot().exhausted_cascades == 1

    @pytest.mark.asyncio
    async def test_missing_fetcher_is_not_configured(self, strategy_store):
        resolver = _resolver([ScriptedFetcher("native", "ok")], strategy_store,
                             cascade=("enhanced", "native"))
        resolved = await resolver.resolve(URL)
        assert resolved.diagnostics.attempts[0].error_kind == "not_configured"
        assert resolved.strategy == "native"

    @pytest.mark.asyncio
    async def test_timeout_is_classified(self, strategy_store):
        slow = ScriptedFetcher("native", "late", delay_s=5)
        enhanced = ScriptedFetcher("enhanced", "fast")
        resolver = _resolver([slow, enhanced], strategy_store)

        resolved = await resolver.resolve(URL, timeout_s=0.05)

        assert resolved.diagnostics.attempts[0].error_kind == "timeout"
        assert resolved.strategy == "enhanced"

    @pytest.mark.asyncio
    async def test_empty_content_is_failure(self, strategy_store):
        resolver = _resolver(
            [ScriptedFetcher("native", ""), ScriptedFetcher("enhanced", "body")], strategy_store
        )
        resolved = await resolver.resolve(URL)
        assert resolved.diagnostics.attempts[0].error_kind == "empty"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc,kind", [
        (ConnectionError("Connection refused"), "network"),
        (RuntimeError("HTTP 403 Forbidden"), "blocked"),
        (RuntimeError("something odd"), "unknown"),
    ])
    async def test_unexpected_exceptions_are_classified(self, strategy_store, exc, kind):
        broken = ScriptedFetcher("native", exception=exc)
        resolver = _resolver([broken, ScriptedFetcher("enhanced", "ok")], strategy_store)
        resolved = await resolver.resolve(URL)
        assert resolved.diagnostics.attempts[0].error_kind == kind

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw_kind,kind", [
        ("notFound", "not_found"),
        ("serverError", "server_error"),
        ("rate-limited", "unknown"),
    ])
    async def test_foreign_error_kinds_do_not_stop_cascade(self, strategy_store, raw_kind, kind):
        native = ScriptedFetcher("native", exception=FetchError(raw_kind, "upstream said no"))
        enhanced = ScriptedFetcher("enhanced", "rendered")
        resolver = _resolver([native, enhanced], strategy_store)

        resolved = await resolver.resolve(URL)

        assert resolved.strategy == "enhanced"
        assert enhanced.calls == [URL]
        attempt = resolved.diagnostics.attempts[0]
        assert attempt.error_kind == kind
        assert "upstream said no" in attempt.error_message
        if kind == "unknown":
            assert attempt.error_message.startswith("[rate-limited]")

    @pytest.mark.asyncio
    async def test_kind_overwritten_after_construction_is_normalized(self, strategy_store, metrics):
        error = FetchError("blocked", "captcha")
        error.kind = "captchaWall"
        native = ScriptedFetcher("native", exception=error)
        resolver = _resolver(
            [native, ScriptedFetcher("enhanced", "ok")], strategy_store, metrics=metrics
        )

        resolved = await resolver.resolve(URL)

        assert resolved.diagnostics.attempts[0].error_kind == "unknown"
        assert metrics.strategy_metrics()["native"].errors == {"unknown": 1}

    @pytest.mark.asyncio
    async def test_store_failure_does_not_fail_request(self, strategy_store):
        strategy_store.record = AsyncMock(side_effect=CacheBackendError("read-only"))
        resolver = _resolver([ScriptedFetcher("native", "ok")], strategy_store)
        resolved = await resolver.resolve(URL)
        assert resolved.strategy == "native"


class TestResolveAndFetch:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, strategy_store, cache_manager, metrics):
        native = ScriptedFetcher("native", "<p>hi</p>")
        resolver = _resolver([native], strategy_store, cache=cache_manager, metrics=metrics)

        first = await resolver.resolve_and_fetch(URL)
        second = await resolver.resolve_and_fetch(URL)

        assert first.from_cache is False
        assert first.tier == "raw"
        assert first.source_strategy == "native"
        assert first.uris.raw is not None
        assert second.from_cache is True
        assert second.content == "<p>hi</p>"
        assert second.source_strategy == "native"
        assert len(native.calls) == 1
        assert metrics.cache_metrics().hits == 1
        assert metrics.cache_metrics().misses == 1

    @pytest.mark.asyncio
    async def test_equivalent_urls_share_cache(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", "x")
        resolver = _resolver([native], strategy_store, cache=cache_manager)
        await resolver.resolve_and_fetch("HTTPS://Yelp.com/biz/dolly-san-francisco#reviews")
        result = await resolver.resolve_and_fetch(URL)
        assert result.from_cache is True
        assert len(native.calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_url(self, strategy_store, cache_manager):
        resolver = _resolver([ScriptedFetcher("native", "x")], strategy_store, cache=cache_manager)
        with pytest.raises(InvalidKeyError):
            await resolver.resolve_and_fetch("yelp.com/biz")

    @pytest.mark.asyncio
    async def test_force_refetch_bypasses_cache(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", "x")
        resolver = _resolver([native], strategy_store, cache=cache_manager)
        await resolver.resolve_and_fetch(URL)
        result = await resolver.resolve_and_fetch(URL, options=FetchOptions(force_refetch=True))
        assert result.from_cache is False
        assert len(native.calls) == 2

    @pytest.mark.asyncio
    async def test_expired_entry_triggers_fetch(self, strategy_store, cache_manager, clock):
        native = ScriptedFetcher("native", "x")
        resolver = _resolver([native], strategy_store, cache=cache_manager)
        await resolver.resolve_and_fetch(URL, options=FetchOptions(ttl_ms=1000))
        clock.advance(ms=1000)
        result = await resolver.resolve_and_fetch(URL)
        assert result.from_cache is False
        assert len(native.calls) == 2

    @pytest.mark.asyncio
    async def test_processors_fill_tiers(self, strategy_store, cache_manager):
        cleaner = AsyncMock(return_value="# Dolly")
        extractor = AsyncMock(return_value="Open 9-5")
        resolver = _resolver(
            [ScriptedFetcher("native", "<h1>Dolly</h1>")], strategy_store,
            cache=cache_manager, cleaner=cleaner, extractor=extractor,
        )

        result = await resolver.resolve_and_fetch(URL, "opening hours")

        assert result.tier == "extracted"
        assert result.content == "Open 9-5"
        assert set(result.uris.as_dict()) == {"raw", "cleaned", "extracted"}
        cleaner.assert_awaited_once_with("<h1>Dolly</h1>", URL)
        extractor.assert_awaited_once_with("# Dolly", "opening hours")

        plain = await resolver.resolve_and_fetch(URL, None)
        assert plain.from_cache is False

        cached = await resolver.resolve_and_fetch(URL, "opening hours")
        assert cached.from_cache is True
        assert cached.tier == "extracted"

    @pytest.mark.asyncio
    async def test_cleaned_tier_preferred_without_query(self, strategy_store, cache_manager):
        resolver = _resolver(
            [ScriptedFetcher("native", "<h1>Dolly</h1>")], strategy_store,
            cache=cache_manager, cleaner=AsyncMock(return_value="# Dolly"),
        )
        await resolver.resolve_and_fetch(URL)
        cached = await resolver.resolve_and_fetch(URL)
        assert cached.tier == "cleaned"
        assert cached.content == "# Dolly"

    @pytest.mark.asyncio
    async def test_extraction_failure_caches_under_plain_key(self, strategy_store, cache_manager):
        resolver = _resolver(
            [ScriptedFetcher("native", "<p>x</p>")], strategy_store,
            cache=cache_manager, extractor=AsyncMock(side_effect=RuntimeError("llm down")),
        )
        result = await resolver.resolve_and_fetch(URL, "summary")

        assert result.tier == "raw"
        assert result.extraction_query == "summary"
        assert await cache_manager.find_by_key(URL, "summary") == []
        assert len(await cache_manager.find_by_key(URL)) == 1

    @pytest.mark.asyncio
    async def test_cleaner_failure_keeps_raw(self, strategy_store, cache_manager):
        resolver = _resolver(
            [ScriptedFetcher("native", "<p>x</p>")], strategy_store,
            cache=cache_manager, cleaner=AsyncMock(side_effect=ValueError("bad html")),
        )
        result = await resolver.resolve_and_fetch(URL)
        assert result.tier == "raw"
        assert result.uris.cleaned is None

    @pytest.mark.asyncio
    async def test_binary_content_not_cleaned(self, strategy_store, cache_manager):
        cleaner = AsyncMock(return_value="never")
        resolver = _resolver(
            [ScriptedFetcher("native", b"%PDF-1.7")], strategy_store,
            cache=cache_manager, cleaner=cleaner,
        )
        result = await resolver.resolve_and_fetch(URL)
        assert result.content == b"%PDF-1.7"
        cleaner.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_returns_content(
        self, strategy_store, cache_manager, memory_store, metrics
    ):
        memory_store.put = AsyncMock(side_effect=CacheBackendError("disk full"))
        resolver = _resolver([ScriptedFetcher("native", "fresh")], strategy_store,
                             cache=cache_manager, metrics=metrics)

        result = await resolver.resolve_and_fetch(URL)

        assert result.content == "fresh"
        assert result.cache_error == "disk full"
        assert result.uris.as_dict() == {}
        assert metrics.cache_metrics().write_failures == 1

    @pytest.mark.asyncio
    async def test_works_without_cache(self, strategy_store):
        resolver = _resolver([ScriptedFetcher("native", "x")], strategy_store)
        result = await resolver.resolve_and_fetch(URL)
        assert result.content == "x"
        assert await resolver.invalidate(URL) == 0

    @pytest.mark.asyncio
    async def test_cache_lookup_uses_the_manager_it_is_given(self, strategy_store, cache_manager):
        await cache_manager.write(URL, None, "raw", "cached body")
        resolver = _resolver([ScriptedFetcher("native", "x")], strategy_store)

        hit = await resolver._lookup_cache(cache_manager, URL, None)

        assert hit is not None
        assert hit.from_cache is True
        assert hit.content == "cached body"

    @pytest.mark.asyncio
    async def test_invalidate(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", "x")
        resolver = _resolver([native], strategy_store, cache=cache_manager)
        await resolver.resolve_and_fetch(URL)
        assert await resolver.invalidate(URL) == 1
        await resolver.resolve_and_fetch(URL)
        assert len(native.calls) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_propagates_and_caches_nothing(self, strategy_store, cache_manager):
        resolver = _resolver(
            [ScriptedFetcher("native", error_kind="blocked"),
             ScriptedFetcher("enhanced", error_kind="blocked")],
            strategy_store, cache=cache_manager,
        )
        with pytest.raises(CascadeExhaustedError):
            await resolver.resolve_and_fetch(URL)
        assert await cache_manager.store.item_count() == 0
        assert resolver.inflight_count() == 0


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_identical_requests_share_one_cascade(self, strategy_store, cache_manager, metrics):
        native = ScriptedFetcher("native", "shared")
        native.gate = asyncio.Event()
        resolver = _resolver([native], strategy_store, cache=cache_manager, metrics=metrics)

        tasks = [asyncio.create_task(resolver.resolve_and_fetch(URL)) for _ in range(3)]
        await _wait_until(lambda: metrics.snapshot().coalesced_requests == 2)
        native.gate.set()
        results = await asyncio.gather(*tasks)

        assert len(native.calls) == 1
        assert {r.content for r in results} == {"shared"}
        assert resolver.inflight_count() == 0

    @pytest.mark.asyncio
    async def test_different_queries_not_coalesced(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", "x")
        native.gate = asyncio.Event()
        resolver = _resolver([native], strategy_store, cache=cache_manager)

        tasks = [
            asyncio.create_task(resolver.resolve_and_fetch(URL, "a")),
            asyncio.create_task(resolver.resolve_and_fetch(URL, "b")),
        ]
        await _wait_until(lambda: len(native.calls) == 2)
        native.gate.set()
        await asyncio.gather(*tasks)
        assert len(native.calls) == 2

    @pytest.mark.asyncio
    async def test_followers_receive_the_same_failure(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", error_kind="blocked")
        native.gate = asyncio.Event()
        resolver = _resolver([native], strategy_store, cache=cache_manager, cascade=("native",))

        tasks = [asyncio.create_task(resolver.resolve_and_fetch(URL)) for _ in range(2)]
        await _wait_until(lambda: len(native.calls) == 1 and resolver.inflight_count() == 1)
        await asyncio.sleep(0)
        native.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, CascadeExhaustedError) for r in results)
        assert len(native.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_fetch(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", "x")
        native.gate = asyncio.Event()
        resolver = _resolver([native], strategy_store, cache=cache_manager)

        leader = asyncio.create_task(resolver.resolve_and_fetch(URL))
        follower = asyncio.create_task(resolver.resolve_and_fetch(URL))
        await _wait_until(lambda: len(native.calls) == 1)
        await asyncio.sleep(0)
        leader.cancel()
        native.gate.set()

        result = await follower
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert result.content == "x"
        assert len(native.calls) == 1


class TestClose:
    @pytest.mark.asyncio
    async def test_aclose_closes_fetchers_and_stops_cleanup(self, strategy_store, cache_manager):
        native = ScriptedFetcher("native", "x")
        resolver = _resolver([native], strategy_store, cache=cache_manager)
        cache_manager.start_cleanup(interval_s=10)
        await resolver.aclose()
        assert native.closed is True
        assert cache_manager.cleanup_running is False
