# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides a controllable clock, scripted fetchers, cache managers and
strategy stores. No network access: every fetch is scripted.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from tierfetch.cache.manager import CacheManager
from tierfetch.cache.memory_store import MemoryCacheStore
from tierfetch.core.errors import FetchError
from tierfetch.strategy.base_fetcher import BaseFetcher
from tierfetch.strategy.models import FetchedContent
from tierfetch.strategy.store import MemoryStrategyStore
from tierfetch.tracking.metrics import MetricsCollector


# === Helpers ===


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 0, seconds: float = 0) -> None:
        self.now += timedelta(milliseconds=ms, seconds=seconds)


class ScriptedFetcher(BaseFetcher):
    """Fetcher that returns content or raises a FetchError kind.

    ``gate``, when set, must be released before the fetch completes, which
    lets tests hold a request in flight.
    """

    def __init__(
        self,
        name: str,
        content: str | bytes | None = None,
        error_kind: str | None = None,
        delay_s: float = 0.0,
        exception: Exception | None = None,
    ) -> None:
        self.name = name
        self.content = content
        self.error_kind = error_kind
        self.delay_s = delay_s
        self.exception = exception
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def attempt(self, url: str, timeout_s: float) -> FetchedContent:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.exception is not None:
            raise self.exception
        if self.error_kind is not None:
            raise FetchError(self.error_kind, f"scripted {self.error_kind}", strategy=self.name)
        return FetchedContent(content=self.content if self.content is not None else "")

    async def aclose(self) -> None:
        self.closed = True


# === FIXTURES ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock)


@pytest.fixture
def cache_manager(memory_store, clock, metrics) -> CacheManager:
    """Memory-backed manager with roomy limits and a 1-hour default TTL."""
    return CacheManager(
        memory_store,
        max_size_bytes=1024 * 1024,
        max_items=100,
        default_ttl_ms=60 * 60 * 1000,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def strategy_store(clock) -> MemoryStrategyStore:
    return MemoryStrategyStore(clock=clock)


@pytest.fixture
def tmp_cache_dir(tmp_path):
    """Temporary cache root."""
    d = tmp_path / "cache"
    d.mkdir()
    return d
