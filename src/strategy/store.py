# src/strategy/store.py — v1
"""Strategy stores: URL prefix -> preferred fetch strategy.

The prefix of a URL is its host[:port] plus its path without the final
segment (``yelp.com/biz/`` for ``https://yelp.com/biz/dolly``). Lookup
is an exact match on that prefix, so "same directory, same strategy".

The file-backed store keeps a human-editable markdown table:

    | prefix | strategy | note | updated_at |
    | --- | --- | --- | --- |
    | yelp.com/biz/ | enhanced | Auto-discovered via cascade | 2026-10-18T12:00:00+00:00 |
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from tierfetch.core.clock import Clock, utc_now
from tierfetch.core.errors import CacheBackendError
from tierfetch.core.urls import url_prefix
from tierfetch.strategy.models import StrategyRecord

logger = logging.getLogger(__name__)

_CELL_SPLIT = re.compile(r"(?<!\\)\|")
_SEPARATOR_CELL = re.compile(r"^:?-{3,}:?$")
_HEADER_ALIASES = {"strategy": "strategy", "default_strategy": "strategy"}


class BaseStrategyStore(ABC):
    """Persisted table of learned strategy overrides."""

    @abstractmethod
    async def get(self, prefix: str) -> StrategyRecord | None:
        """Return the record stored for an exact prefix."""

    @abstractmethod
    async def upsert(self, record: StrategyRecord) -> None:
        """Insert or replace the record for ``record.prefix`` (last write wins)."""

    @abstractmethod
    async def delete(self, prefix: str) -> None:
        """Remove a prefix. Missing prefixes are ignored."""

    @abstractmethod
    async def list_records(self) -> list[StrategyRecord]:
        """All records, sorted by prefix."""

    async def lookup(self, url: str) -> str | None:
        """Return the preferred strategy for the URL's prefix, if any."""
        record = await self.get(url_prefix(url))
        return record.strategy if record is not None else None

    async def record(
        self, url: str, strategy: str, note: str | None = None
    ) -> StrategyRecord:
        """Upsert the record for the URL's prefix.

        Re-recording the strategy already stored for the prefix leaves the
        table untouched.
        """
        return await self.record_prefix(url_prefix(url), strategy, note)

    async def record_prefix(
        self, prefix: str, strategy: str, note: str | None = None
    ) -> StrategyRecord:
        existing = await self.get(prefix)
        if (
            existing is not None
            and existing.strategy == strategy
            and (note is None or note == existing.note)
        ):
            return existing
        record = StrategyRecord(
            prefix=prefix,
            strategy=strategy,
            note=note if note is not None else (existing.note if existing else None),
            updated_at=self._now(),
        )
        await self.upsert(record)
        logger.info("Strategy for %s set to '%s'", prefix, strategy)
        return record

    def _now(self) -> datetime:
        return utc_now()


class MemoryStrategyStore(BaseStrategyStore):
    """In-process strategy table (tests, ephemeral deployments)."""

    def __init__(
        self,
        records: list[StrategyRecord] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._records: dict[str, StrategyRecord] = {}
        self._clock = clock or utc_now
        for record in records or []:
            self._records[record.prefix] = record

    def _now(self) -> datetime:
        return self._clock()

    async def get(self, prefix: str) -> StrategyRecord | None:
        return self._records.get(prefix)

    async def upsert(self, record: StrategyRecord) -> None:
        # Single dict assignment: readers see the old or the new record.
        self._records[record.prefix] = record

    async def delete(self, prefix: str) -> None:
        self._records.pop(prefix, None)

    async def list_records(self) -> list[StrategyRecord]:
        return sorted(self._records.values(), key=lambda r: r.prefix)


class FileStrategyStore(MemoryStrategyStore):
    """Strategy table persisted as a markdown file.

    The file is loaded once at construction and rewritten atomically after
    every change.
    """

    def __init__(self, path: Path | str, clock: Clock | None = None) -> None:
        self._path = Path(path).expanduser()
        super().__init__(records=load_strategy_table(self._path), clock=clock)
        self._persist_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def upsert(self, record: StrategyRecord) -> None:
        async with self._persist_lock:
            await super().upsert(record)
            self._persist()

    async def delete(self, prefix: str) -> None:
        async with self._persist_lock:
            await super().delete(prefix)
            self._persist()

    def _persist(self) -> None:
        text = render_strategy_table(sorted(self._records.values(), key=lambda r: r.prefix))
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(text)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheBackendError(f"Failed to persist strategy table {self._path}: {e}") from e


def render_strategy_table(records: list[StrategyRecord]) -> str:
    """Render records as a markdown table."""
    lines = [
        "# Learned fetch strategies",
        "",
        "| prefix | strategy | note | updated_at |",
        "| --- | --- | --- | --- |",
    ]
    for r in records:
        cells = [r.prefix, r.strategy, r.note or "", r.updated_at.isoformat()]
        lines.append("| " + " | ".join(_escape(c) for c in cells) + " |")
    return "\n".join(lines) + "\n"


def parse_strategy_table(text: str, default_updated_at: datetime | None = None) -> list[StrategyRecord]:
    """Parse a markdown strategy table. Malformed rows are skipped."""
    columns: list[str] | None = None
    records: list[StrategyRecord] = []
    fallback_time = default_updated_at or utc_now()

    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line.startswith("|"):
            continue
        cells = [_unescape(c.strip()) for c in _CELL_SPLIT.split(line.strip("|"))]
        if columns is None:
            columns = [_HEADER_ALIASES.get(c.lower(), c.lower()) for c in cells]
            if "prefix" not in columns or "strategy" not in columns:
                logger.warning("Strategy table header missing prefix/strategy columns")
                return []
            continue
        if all(_SEPARATOR_CELL.match(c) for c in cells if c):
            continue

        row = dict(zip(columns, cells))
        prefix = row.get("prefix", "")
        strategy = row.get("strategy", "")
        if not prefix or not strategy:
            logger.warning("Skipping strategy table line %d: missing prefix or strategy", lineno)
            continue
        try:
            updated_at = (
                datetime.fromisoformat(row["updated_at"])
                if row.get("updated_at")
                else fallback_time
            )
        except ValueError:
            logger.warning("Line %d: bad updated_at %r, using load time", lineno, row["updated_at"])
            updated_at = fallback_time
        records.append(
            StrategyRecord(
                prefix=prefix,
                strategy=strategy,
                note=row.get("note") or None,
                updated_at=updated_at,
            )
        )
    return records


def load_strategy_table(path: Path) -> list[StrategyRecord]:
    """Load a strategy table file. A missing file is an empty table."""
    if not path.exists():
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise CacheBackendError(f"Failed to read strategy table {path}: {e}") from e
    records = parse_strategy_table(text)
    logger.debug("Loaded %d strategy records from %s", len(records), path)
    return records


def _escape(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def _unescape(value: str) -> str:
    return value.replace("\\|", "|")
