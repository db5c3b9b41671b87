# src/strategy/base_fetcher.py — v1
"""Abstract fetch strategy interface and error classification."""

from __future__ import annotations

from abc import ABC, abstractmethod

from tierfetch.core.errors import FetchErrorKind
from tierfetch.strategy.models import FetchedContent


class BaseFetcher(ABC):
    """A named way of retrieving a URL (plain HTTP, rendering browser, ...)."""

    name: str = ""

    @abstractmethod
    async def attempt(self, url: str, timeout_s: float) -> FetchedContent:
        """Fetch the URL.

        Raises:
            FetchError: With a classified kind when the fetch fails.
        """

    async def aclose(self) -> None:
        """Release client resources (no-op by default)."""


def classify_status(status_code: int) -> FetchErrorKind | None:
    """Map an HTTP status to an error kind. None for success codes."""
    if status_code < 400:
        return None
    if status_code in (401, 407):
        return "auth"
    if status_code in (403, 429, 451):
        return "blocked"
    if status_code in (404, 410):
        return "not_found"
    if status_code >= 500:
        return "server_error"
    return "unknown"


def classify_error(error: Exception) -> FetchErrorKind:
    """Classify an unexpected exception raised by a fetcher."""
    msg = str(error).lower()
    name = type(error).__name__.lower()

    if "timeout" in name or "timed out" in msg or "timeout" in msg:
        return "timeout"
    if "unauthorized" in msg or "authentication" in msg or "invalid token" in msg:
        return "auth"
    if any(s in msg for s in ("403", "429", "forbidden", "captcha", "blocked")):
        return "blocked"
    if "404" in msg or "not found" in msg:
        return "not_found"
    if any(c in msg for c in ("500", "502", "503", "504", "server error")):
        return "server_error"
    if any(s in name + msg for s in ("connect", "dns", "network", "resolve", "ssl")):
        return "network"
    return "unknown"
