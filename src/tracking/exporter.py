# src/tracking/exporter.py — v1
"""Metrics export to JSON and summary text."""

from __future__ import annotations

import logging
from pathlib import Path

from tierfetch.tracking.models import MetricsSnapshot

logger = logging.getLogger(__name__)


def export_metrics_json(snapshot: MetricsSnapshot, path: Path) -> None:
    """Write a metrics snapshot as formatted JSON.

    Args:
        snapshot: Snapshot to export.
        path: Output file path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    logger.debug("Metrics exported to %s", path)


def export_metrics_summary(snapshot: MetricsSnapshot) -> str:
    """Generate a human-readable summary of a metrics snapshot.

    Args:
        snapshot: Snapshot to summarize.

    Returns:
        Formatted summary string.
    """
    cache = snapshot.cache
    lines: list[str] = [
        f"=== Metrics ({snapshot.taken_at.isoformat()}) ===",
        f"Cache      : {cache.hits} hits, {cache.misses} misses "
        f"(hit rate {cache.hit_rate * 100:.1f}%)",
        f"Writes     : {cache.writes} ({cache.total_bytes_written:,} bytes), "
        f"{cache.write_failures} failed",
        f"Removed    : {cache.evictions} evicted, {cache.expirations} expired",
        f"Coalesced  : {snapshot.coalesced_requests}",
        f"Exhausted  : {snapshot.exhausted_cascades}",
    ]

    if snapshot.strategies:
        lines.append("")
        lines.append("--- Per Strategy ---")
        for name, strategy in sorted(snapshot.strategies.items()):
            lines.append(
                f"  {name:12s} | {strategy.success_count:4d} ok | "
                f"{strategy.failure_count:4d} failed | "
                f"avg {strategy.avg_duration_ms:.0f}ms | "
                f"{strategy.fallback_count} fallbacks"
            )
            if strategy.errors:
                kinds = ", ".join(f"{k}={v}" for k, v in sorted(strategy.errors.items()))
                lines.append(f"  {'':12s}   errors: {kinds}")

    return "\n".join(lines)
