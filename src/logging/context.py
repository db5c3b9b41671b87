# src/logging/context.py — v2
"""Per-request logging context: request_id, source_url, strategy.

Values live in context variables, so concurrent resolutions running as
separate asyncio tasks each see their own context.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_source_url: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "source_url", default=None
)
_strategy: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "strategy", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    request_id: str | None = None
    source_url: str | None = None
    strategy: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        request_id=_request_id.get(),
        source_url=_source_url.get(),
        strategy=_strategy.get(),
    )


def set_request_context(source_url: str, request_id: str | None = None) -> str:
    """Set request-level context. Returns the request id in use."""
    rid = request_id or uuid.uuid4().hex[:12]
    _request_id.set(rid)
    _source_url.set(source_url)
    return rid


def set_strategy_context(strategy: str | None) -> None:
    """Set the strategy currently being attempted."""
    _strategy.set(strategy)


@contextmanager
def strategy_context(strategy: str) -> Iterator[None]:
    """Scope the strategy context variable to a block."""
    token = _strategy.set(strategy)
    try:
        yield
    finally:
        _strategy.reset(token)


def clear_context() -> None:
    """Reset all context variables."""
    _request_id.set(None)
    _source_url.set(None)
    _strategy.set(None)
