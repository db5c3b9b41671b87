# src/tracking/metrics.py — v1
"""In-process metrics for cache operations and strategy attempts.

Counters are plain integers mutated from the event loop thread, so no
locking is needed. ``snapshot()`` returns immutable pydantic copies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from tierfetch.tracking.models import CacheMetrics, MetricsSnapshot, StrategyMetrics


@dataclass
class _StrategyCounters:
    success_count: int = 0
    failure_count: int = 0
    total_duration_ms: int = 0
    fallback_count: int = 0
    errors: dict[str, int] = field(default_factory=dict)


class MetricsCollector:
    """Collects cache and strategy metrics for one process."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._cache_hits = 0
        self._cache_misses = 0
        self._cache_writes = 0
        self._cache_write_failures = 0
        self._cache_evictions = 0
        self._cache_expirations = 0
        self._bytes_written = 0
        self._coalesced = 0
        self._exhausted = 0
        self._strategies: dict[str, _StrategyCounters] = {}

    # --- Cache ---

    def record_cache_hit(self) -> None:
        self._cache_hits += 1

    def record_cache_miss(self) -> None:
        self._cache_misses += 1

    def record_cache_write(self, size_bytes: int) -> None:
        self._cache_writes += 1
        self._bytes_written += size_bytes

    def record_cache_write_failure(self) -> None:
        self._cache_write_failures += 1

    def record_cache_eviction(self) -> None:
        self._cache_evictions += 1

    def record_cache_expiration(self) -> None:
        self._cache_expirations += 1

    # --- Strategies ---

    def record_attempt(
        self, strategy: str, success: bool, duration_ms: int, error_kind: str | None = None
    ) -> None:
        counters = self._strategies.setdefault(strategy, _StrategyCounters())
        counters.total_duration_ms += duration_ms
        if success:
            counters.success_count += 1
        else:
            counters.failure_count += 1
            kind = error_kind or "unknown"
            counters.errors[kind] = counters.errors.get(kind, 0) + 1

    def record_fallback(self, from_strategy: str, to_strategy: str) -> None:
        """Count a fallthrough from one strategy to the next one tried."""
        counters = self._strategies.setdefault(from_strategy, _StrategyCounters())
        counters.fallback_count += 1

    def record_coalesced(self) -> None:
        self._coalesced += 1

    def record_exhausted(self) -> None:
        self._exhausted += 1

    # --- Views ---

    def cache_metrics(self) -> CacheMetrics:
        lookups = self._cache_hits + self._cache_misses
        return CacheMetrics(
            hits=self._cache_hits,
            misses=self._cache_misses,
            writes=self._cache_writes,
            write_failures=self._cache_write_failures,
            evictions=self._cache_evictions,
            expirations=self._cache_expirations,
            total_bytes_written=self._bytes_written,
            hit_rate=self._cache_hits / lookups if lookups else 0.0,
        )

    def strategy_metrics(self) -> dict[str, StrategyMetrics]:
        result: dict[str, StrategyMetrics] = {}
        for name, c in self._strategies.items():
            attempts = c.success_count + c.failure_count
            result[name] = StrategyMetrics(
                strategy=name,
                success_count=c.success_count,
                failure_count=c.failure_count,
                total_duration_ms=c.total_duration_ms,
                avg_duration_ms=c.total_duration_ms / attempts if attempts else 0.0,
                fallback_count=c.fallback_count,
                errors=dict(c.errors),
            )
        return result

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            taken_at=datetime.now(timezone.utc),
            cache=self.cache_metrics(),
            strategies=self.strategy_metrics(),
            coalesced_requests=self._coalesced,
            exhausted_cascades=self._exhausted,
        )
