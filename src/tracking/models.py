# src/tracking/models.py — v2
"""Tracking models: CacheMetrics, StrategyMetrics, MetricsSnapshot."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class CacheMetrics(BaseModel):
    """Cache operation counters since process start."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    write_failures: int = 0
    evictions: int = 0
    expirations: int = 0
    total_bytes_written: int = 0
    hit_rate: float = 0.0


class StrategyMetrics(BaseModel):
    """Per-strategy attempt outcomes and latency."""

    strategy: str
    success_count: int = 0
    failure_count: int = 0
    total_duration_ms: int = 0
    avg_duration_ms: float = 0.0
    fallback_count: int = 0
    errors: dict[str, int] = Field(default_factory=dict)


class MetricsSnapshot(BaseModel):
    """Consolidated view of all collected metrics."""

    taken_at: datetime
    cache: CacheMetrics
    strategies: dict[str, StrategyMetrics] = Field(default_factory=dict)
    coalesced_requests: int = 0
    exhausted_cascades: int = 0
