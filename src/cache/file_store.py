# src/cache/file_store.py — v2
"""File-based cache store (CACHE_BACKEND=file).

One file per entry under ``{cache_root}/{tier}/``. The file name embeds the
URL slug, creation timestamp and sequence number. Each file starts with a
JSON header between ``---`` fences, followed by the body:

    ---
    {"tier": "raw", "source_url": "https://x.test/a", ...}
    ---

    <content>

Writes go to a temp file in the same directory and are moved into place
with ``os.replace`` so readers never see a partial entry. Size accounting
is computed from file sizes on demand.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tierfetch.cache.base_cache_store import BaseCacheStore
from tierfetch.cache.models import TIERS, CacheEntry, CacheFilter, Tier
from tierfetch.core.clock import Clock, utc_now
from tierfetch.core.errors import CacheBackendError
from tierfetch.core.urls import url_slug

logger = logging.getLogger(__name__)

_FENCE = "---\n"
_SEPARATOR = "\n---\n\n"
_SUFFIX = ".md"


class FileCacheStore(BaseCacheStore):
    """Filesystem cache store with one markdown-style file per entry."""

    scheme = "file"

    def __init__(self, cache_root: Path | str, clock: Clock | None = None) -> None:
        self._root = Path(cache_root).expanduser().resolve()
        self._clock = clock or utc_now
        self._sequence_seeded = False
        try:
            for tier in TIERS:
                (self._root / tier).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheBackendError(f"Cannot create cache root {self._root}: {e}") from e

    @property
    def root(self) -> Path:
        return self._root

    def build_uri(
        self, tier: Tier, source_url: str, created_at: datetime, sequence: int
    ) -> str:
        stamp = int(created_at.timestamp() * 1000)
        filename = f"{url_slug(source_url)}_{stamp}_{sequence:06d}{_SUFFIX}"
        return _to_uri(self._root / tier / filename)

    async def put(self, entry: CacheEntry) -> None:
        path = self._path_for(entry.uri)
        if path is None:
            raise CacheBackendError(f"URI outside cache root: {entry.uri}", uri=entry.uri)
        self._seed_access_sequence()
        stored = entry.model_copy()
        self._mark_accessed(stored, stored.last_access_at)
        self._write_atomic(path, _serialize(stored), entry.uri)

    async def get(self, uri: str) -> CacheEntry | None:
        path = self._path_for(uri)
        if path is None:
            return None
        self._seed_access_sequence()
        entry = self._load(path)
        if entry is None:
            return None

        self._mark_accessed(entry, self._clock())
        try:
            self._write_atomic(path, _serialize(entry), uri)
            entry.size_bytes = path.stat().st_size
        except (CacheBackendError, OSError) as e:
            # Entry is still readable; only the LRU timestamp is stale.
            logger.warning("Failed to update access time for %s: %s", uri, e)
        return entry

    async def peek(self, uri: str) -> CacheEntry | None:
        path = self._path_for(uri)
        if path is None:
            return None
        return self._load(path)

    async def delete(self, uri: str) -> None:
        path = self._path_for(uri)
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise CacheBackendError(f"Failed to delete {uri}: {e}", uri=uri) from e

    async def list_entries(
        self, entry_filter: CacheFilter | None = None
    ) -> AsyncIterator[CacheEntry]:
        for path in self._iter_files(entry_filter):
            entry = self._load(path)
            if entry is None:
                continue
            if entry_filter is None or entry_filter.matches(entry):
                yield entry

    async def total_size_bytes(self) -> int:
        total = 0
        for path in self._iter_files(None):
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    async def item_count(self) -> int:
        return sum(1 for _ in self._iter_files(None))

    # --- Internals ---

    def _path_for(self, uri: str) -> Path | None:
        """Map a file:// URI to a path inside the cache root, else None."""
        if not uri.startswith("file://"):
            return None
        path = Path(uri[len("file://"):])
        try:
            path.resolve().relative_to(self._root)
        except ValueError:
            return None
        return path

    def _seed_access_sequence(self) -> None:
        """Continue the access counter from entries already on disk (once)."""
        if self._sequence_seeded:
            return
        self._sequence_seeded = True
        for path in self._iter_files(None):
            entry = self._load(path)
            if entry is not None:
                self._observe_access_sequence(entry)

    def _iter_files(self, entry_filter: CacheFilter | None) -> list[Path]:
        tiers = TIERS
        name_prefix = ""
        if entry_filter is not None:
            if entry_filter.tier is not None:
                tiers = (entry_filter.tier,)
            if entry_filter.source_url is not None:
                name_prefix = url_slug(entry_filter.source_url) + "_"

        files: list[Path] = []
        for tier in tiers:
            tier_dir = self._root / tier
            if not tier_dir.is_dir():
                continue
            for path in sorted(tier_dir.glob(f"*{_SUFFIX}")):
                if name_prefix and not path.name.startswith(name_prefix):
                    continue
                files.append(path)
        return files

    def _load(self, path: Path) -> CacheEntry | None:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheBackendError(f"Failed to read {path}: {e}", uri=_to_uri(path)) from e

        try:
            return _deserialize(data.decode("utf-8"), uri=_to_uri(path), size_bytes=len(data))
        except (ValueError, ValidationError) as e:
            logger.warning("Skipping unreadable cache file %s: %s", path, e)
            return None

    def _write_atomic(self, path: Path, data: str, uri: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=".", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                    handle.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheBackendError(f"Failed to write {uri}: {e}", uri=uri) from e


def _serialize(entry: CacheEntry) -> str:
    header: dict[str, Any] = entry.model_dump(
        mode="json", exclude={"uri", "content", "size_bytes"}
    )
    if isinstance(entry.content, bytes):
        header["encoding"] = "base64"
        body = base64.b64encode(entry.content).decode("ascii")
    else:
        header["encoding"] = "utf-8"
        body = entry.content
    return _FENCE + json.dumps(header, indent=2, ensure_ascii=False) + _SEPARATOR + body


def _deserialize(raw: str, uri: str, size_bytes: int) -> CacheEntry:
    if not raw.startswith(_FENCE):
        raise ValueError("missing header fence")
    header_text, sep, body = raw[len(_FENCE):].partition(_SEPARATOR)
    if not sep:
        raise ValueError("unterminated header")

    header = json.loads(header_text)
    encoding = header.pop("encoding", "utf-8")
    content: str | bytes = body
    if encoding == "base64":
        content = base64.b64decode(body)
    return CacheEntry(uri=uri, content=content, size_bytes=size_bytes, **header)


def _to_uri(path: Path) -> str:
    return f"file://{path}"
