# src/cache/models.py — v3
"""Cache domain models: CacheEntry, CacheFilter, TierUris, CacheStats.

An entry is addressed by its ``uri``; its logical key is the triple
(source_url, extraction_query, tier). The three tiers of one key are stored
as independent entries.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

Tier = Literal["raw", "cleaned", "extracted"]
TIERS: tuple[Tier, ...] = ("raw", "cleaned", "extracted")


def content_size(content: str | bytes) -> int:
    """Serialized size of entry content in bytes."""
    if isinstance(content, bytes):
        return len(content)
    return len(content.encode("utf-8"))


class CacheEntry(BaseModel):
    """One cached artifact at a single processing tier."""

    uri: str
    tier: Tier
    source_url: str
    extraction_query: str | None = None
    content: str | bytes
    content_type: str = "text/plain"
    created_at: datetime
    ttl_ms: int = 0
    last_access_at: datetime
    size_bytes: int = 0
    sequence: int = 0
    access_sequence: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def expires_at(self) -> datetime | None:
        """Expiry instant, or None when ttl_ms is 0 (never expires)."""
        if self.ttl_ms == 0:
            return None
        return self.created_at + timedelta(milliseconds=self.ttl_ms)

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and expires_at <= now

    @property
    def text(self) -> str:
        """Content decoded as text."""
        if isinstance(self.content, bytes):
            return self.content.decode("utf-8", errors="replace")
        return self.content


class CacheFilter(BaseModel):
    """Filter for store listings. Unset fields match everything.

    ``extraction_query`` is only compared when ``match_query`` is True, so
    that ``None`` can mean "entries without a query".
    """

    source_url: str | None = None
    tier: Tier | None = None
    extraction_query: str | None = None
    match_query: bool = False

    def matches(self, entry: CacheEntry) -> bool:
        if self.source_url is not None and entry.source_url != self.source_url:
            return False
        if self.tier is not None and entry.tier != self.tier:
            return False
        if self.match_query and entry.extraction_query != self.extraction_query:
            return False
        return True


class TierUris(BaseModel):
    """URIs written for each tier of one logical key."""

    raw: str | None = None
    cleaned: str | None = None
    extracted: str | None = None

    def as_dict(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class CacheEntrySummary(BaseModel):
    """Per-entry row in CacheStats (no content)."""

    uri: str
    source_url: str
    tier: Tier
    extraction_query: str | None = None
    size_bytes: int
    created_at: datetime
    last_access_at: datetime
    ttl_ms: int


class CacheStats(BaseModel):
    """Point-in-time view of cache occupancy and limits."""

    item_count: int
    total_size_bytes: int
    max_items: int
    max_size_bytes: int
    default_ttl_ms: int
    entries: list[CacheEntrySummary] = Field(default_factory=list)
