# src/main.py — v3
"""CLI entry point: fetch, invalidate, stats and strategies commands.

Usage:
    tierfetch fetch <url> [--query Q] [--strategy S] [--force] [--metrics] [--metrics-json PATH]
    tierfetch invalidate <url> [--query Q]
    tierfetch stats
    tierfetch strategies list
    tierfetch strategies set <prefix> <strategy> [--note NOTE]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from tierfetch.version import __version__

if TYPE_CHECKING:
    from tierfetch.config.settings import Settings
    from tierfetch.tracking.models import MetricsSnapshot

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    from tierfetch.config.settings import ConfigurationError

    try:
        settings = _load_settings(args)
    except (ConfigurationError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    _setup_logging(settings, args.verbose)

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tierfetch",
        description=f"tierfetch v{__version__}: tiered content cache and fetch strategy resolver",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--cache-root", type=Path, default=None,
        help="Use the file cache backend rooted here (overrides CACHE_BACKEND/CACHE_ROOT)",
    )
    parser.add_argument(
        "--strategy-table", type=Path, default=None,
        help="Markdown strategy table to load and update (overrides STRATEGY_STORE_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- fetch ---
    p_fetch = subparsers.add_parser("fetch", help="Fetch a URL through the cache")
    p_fetch.add_argument("url", help="URL to fetch")
    p_fetch.add_argument("-q", "--query", default=None, help="Extraction query")
    p_fetch.add_argument("-s", "--strategy", default=None, help="Strategy to try first")
    p_fetch.add_argument("--force", action="store_true", help="Bypass the cache lookup")
    p_fetch.add_argument("--timeout", type=float, default=None, help="Per-attempt timeout in seconds")
    p_fetch.add_argument(
        "--metrics", action="store_true", help="Print a metrics summary to stderr when done",
    )
    p_fetch.add_argument(
        "--metrics-json", type=Path, default=None, metavar="PATH",
        help="Write the metrics snapshot as JSON to PATH",
    )
    p_fetch.set_defaults(func=_cmd_fetch)

    # --- invalidate ---
    p_inv = subparsers.add_parser("invalidate", help="Drop cached tiers for a URL")
    p_inv.add_argument("url", help="URL to invalidate")
    p_inv.add_argument("-q", "--query", default=None, help="Extraction query")
    p_inv.set_defaults(func=_cmd_invalidate)

    # --- stats ---
    p_stats = subparsers.add_parser("stats", help="Show cache statistics")
    p_stats.set_defaults(func=_cmd_stats)

    # --- strategies ---
    p_strat = subparsers.add_parser("strategies", help="Inspect or seed the strategy table")
    strat_sub = p_strat.add_subparsers(dest="strategies_command")
    p_list = strat_sub.add_parser("list", help="List strategy records")
    p_list.set_defaults(func=_cmd_strategies_list)
    p_set = strat_sub.add_parser("set", help="Set the strategy for a URL prefix")
    p_set.add_argument("prefix", help="URL prefix, e.g. example.com/blog/")
    p_set.add_argument("strategy", help="Strategy name")
    p_set.add_argument("--note", default=None, help="Free-form note")
    p_set.set_defaults(func=_cmd_strategies_set)

    return parser


async def _cmd_fetch(args: argparse.Namespace, settings: Settings) -> int:
    """Fetch a URL and print the preferred tier."""
    from tierfetch.api.facade import create_service
    from tierfetch.core.errors import CascadeExhaustedError, InvalidKeyError
    from tierfetch.strategy.models import FetchOptions

    options = FetchOptions(
        strategy=args.strategy,
        force_refetch=args.force,
        timeout_s=args.timeout,
    )
    result = None
    async with create_service(settings, start_cleanup=False) as service:
        try:
            result = await service.fetch(args.url, args.query, options)
        except InvalidKeyError as exc:
            logger.error("Invalid URL: %s", exc)
            return 1
        except CascadeExhaustedError as exc:
            print(f"\nFetch failed: {exc.url}", file=sys.stderr)
            for attempt in exc.attempts:
                print(
                    f"  {attempt.strategy:<12} {attempt.error_kind or 'unknown':<14}"
                    f" {attempt.duration_ms:>6}ms  {attempt.error_message or ''}",
                    file=sys.stderr,
                )
        finally:
            _report_metrics(args, service.metrics())

    if result is None:
        return 1
    _print_fetch_summary(result)
    content = result.content
    if isinstance(content, bytes):
        sys.stdout.buffer.write(content)
    else:
        sys.stdout.write(content)
        if not content.endswith("\n"):
            sys.stdout.write("\n")
    return 0


def _report_metrics(args: argparse.Namespace, snapshot: MetricsSnapshot) -> None:
    """Emit the metrics requested on the command line."""
    from tierfetch.tracking.exporter import export_metrics_json, export_metrics_summary

    if args.metrics:
        print(f"\n{export_metrics_summary(snapshot)}", file=sys.stderr)
    if args.metrics_json is not None:
        export_metrics_json(snapshot, args.metrics_json)


async def _cmd_invalidate(args: argparse.Namespace, settings: Settings) -> int:
    """Drop every cached tier for a URL."""
    from tierfetch.api.facade import create_service

    async with create_service(settings, fetchers=[], start_cleanup=False) as service:
        removed = await service.invalidate(args.url, args.query)
    print(f"Removed {removed} cache entries for {args.url}")
    return 0


async def _cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    """Display cache statistics."""
    from tierfetch.api.facade import create_service

    async with create_service(settings, fetchers=[], start_cleanup=False) as service:
        stats = await service.stats()

    if stats is None:
        print("Cache disabled")
        return 0
    print(f"\nCache statistics ({settings.cache_backend}):")
    print(f"  Items:     {stats.item_count} / {stats.max_items}")
    print(f"  Size:      {_format_bytes(stats.total_size_bytes)} / {_format_bytes(stats.max_size_bytes)}")
    print(f"  TTL:       {stats.default_ttl_ms // 1000}s")
    for entry in stats.entries:
        query = f" [{entry.extraction_query}]" if entry.extraction_query else ""
        print(f"  {entry.tier:<9} {_format_bytes(entry.size_bytes):>9}  {entry.source_url}{query}")
    return 0


async def _cmd_strategies_list(args: argparse.Namespace, settings: Settings) -> int:
    """Print the strategy table."""
    from tierfetch.api.facade import create_service

    async with create_service(settings, fetchers=[], start_cleanup=False) as service:
        records = await service.list_strategies()

    if not records:
        print("No strategies recorded")
        return 0
    for record in records:
        note = f"  ({record.note})" if record.note else ""
        print(f"{record.prefix:<40} {record.strategy:<12} {record.updated_at.isoformat()}{note}")
    return 0


async def _cmd_strategies_set(args: argparse.Namespace, settings: Settings) -> int:
    """Seed or override the strategy for a prefix."""
    from tierfetch.api.facade import create_service

    if settings.strategy_store_path is None:
        logger.warning("No strategy table configured; the change will not be persisted")

    async with create_service(settings, fetchers=[], start_cleanup=False) as service:
        record = await service.set_strategy(args.prefix, args.strategy, args.note)
    print(f"{record.prefix} -> {record.strategy}")
    return 0


def _load_settings(args: argparse.Namespace) -> Settings:
    """Load settings from .env, applying CLI overrides."""
    from tierfetch.config.settings import load_settings

    overrides: dict[str, object] = {}
    if args.cache_root is not None:
        overrides["cache_backend"] = "file"
        overrides["cache_root"] = args.cache_root
    if args.strategy_table is not None:
        overrides["strategy_store_path"] = args.strategy_table
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return load_settings(**overrides)


def _print_fetch_summary(result: object) -> None:
    """Print where the content came from on stderr."""
    origin = "cache" if result.from_cache else f"strategy '{result.source_strategy}'"
    print(f"# {result.source_url} ({result.tier} tier, from {origin})", file=sys.stderr)
    if result.diagnostics is not None and len(result.diagnostics.attempts) > 1:
        tried = ", ".join(
            f"{a.strategy}={a.outcome if a.outcome == 'success' else a.error_kind}"
            for a in result.diagnostics.attempts
        )
        print(f"# attempts: {tried}", file=sys.stderr)
    if result.cache_error:
        print(f"# cache write failed: {result.cache_error}", file=sys.stderr)


def _format_bytes(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"


def _setup_logging(settings: Settings, verbose: bool) -> None:
    """Configure logging for CLI usage."""
    from tierfetch.logging.logger import setup_logging

    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=str(settings.log_file) if settings.log_file else None,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )


if __name__ == "__main__":
    sys.exit(main())
