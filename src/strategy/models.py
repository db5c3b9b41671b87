# src/strategy/models.py — v1
"""Strategy domain models: StrategyRecord, FetchAttempt, FetchDiagnostics,
FetchOptions, FetchedContent, ResolvedContent, FetchResult.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from tierfetch.cache.models import Tier, TierUris
from tierfetch.core.errors import FetchErrorKind

AttemptSource = Literal["explicit", "configured", "cascade"]


class StrategyRecord(BaseModel):
    """One learned or operator-seeded row of the strategy table."""

    prefix: str
    strategy: str
    note: str | None = None
    updated_at: datetime


class FetchedContent(BaseModel):
    """What a fetch strategy returns on success."""

    content: str | bytes
    content_type: str = "text/html"
    status_code: int | None = None
    final_url: str | None = None


class FetchAttempt(BaseModel):
    """Diagnostics for a single strategy attempt."""

    strategy: str
    source: AttemptSource = "cascade"
    started_at: datetime
    duration_ms: int
    outcome: Literal["success", "error"]
    error_kind: FetchErrorKind | None = None
    error_message: str | None = None


class FetchDiagnostics(BaseModel):
    """Ordered attempt log for one resolution."""

    attempts: list[FetchAttempt] = Field(default_factory=list)
    configured_strategy: str | None = None
    chosen_strategy: str | None = None
    total_duration_ms: int = 0

    @property
    def strategies_attempted(self) -> list[str]:
        return [a.strategy for a in self.attempts]

    @property
    def strategy_errors(self) -> dict[str, str]:
        """Last error kind per failed strategy, for compact display."""
        return {
            a.strategy: a.error_kind or "unknown"
            for a in self.attempts
            if a.outcome == "error"
        }


class FetchOptions(BaseModel):
    """Per-request knobs for resolve_and_fetch."""

    timeout_s: float | None = Field(default=None, gt=0)
    strategy: str | None = None
    force_refetch: bool = False
    ttl_ms: int | None = Field(default=None, ge=0)
    clean: bool = True


class ResolvedContent(BaseModel):
    """Outcome of a successful cascade."""

    url: str
    strategy: str
    fetched: FetchedContent
    diagnostics: FetchDiagnostics


class FetchResult(BaseModel):
    """What callers of resolve_and_fetch receive."""

    source_url: str
    extraction_query: str | None = None
    content: str | bytes
    tier: Tier
    uris: TierUris = Field(default_factory=TierUris)
    from_cache: bool = False
    source_strategy: str | None = None
    diagnostics: FetchDiagnostics | None = None
    cache_error: str | None = None
