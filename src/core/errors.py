# src/core/errors.py — v2
"""Exception hierarchy shared by the cache and strategy layers.

Per-attempt FetchError instances never escape the cascade; callers only see
CascadeExhaustedError (with the full attempt list), CacheBackendError and
InvalidKeyError.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Literal, get_args

if TYPE_CHECKING:
    from tierfetch.strategy.models import FetchDiagnostics

FetchErrorKind = Literal[
    "blocked",
    "timeout",
    "not_found",
    "server_error",
    "network",
    "auth",
    "not_configured",
    "empty",
    "unknown",
]

_KNOWN_KINDS: frozenset[str] = frozenset(get_args(FetchErrorKind))
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_error_kind(kind: object) -> FetchErrorKind:
    """Map a fetcher-supplied kind onto FetchErrorKind.

    camelCase and dashed spellings (``notFound``, ``server-error``) are
    accepted; anything else becomes ``unknown``.
    """
    candidate = _CAMEL_BOUNDARY.sub("_", str(kind)).replace("-", "_").lower()
    if candidate in _KNOWN_KINDS:
        return candidate  # type: ignore[return-value]
    return "unknown"


class TierFetchError(Exception):
    """Base class for all tierfetch errors."""


class InvalidKeyError(TierFetchError, ValueError):
    """A URL or cache key cannot be normalized."""


class CacheBackendError(TierFetchError):
    """I/O failure on the storage medium."""

    def __init__(self, message: str, uri: str | None = None) -> None:
        self.uri = uri
        super().__init__(message)


class FetchError(TierFetchError):
    """A single fetch attempt failed with a classifiable kind."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str = "",
        strategy: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.kind = normalize_error_kind(kind)
        self.raw_kind = kind
        self.strategy = strategy
        self.status_code = status_code
        self.message = message or str(kind)
        super().__init__(f"{strategy or 'fetch'} failed ({self.kind}): {self.message}")


class CascadeExhaustedError(TierFetchError):
    """Every strategy in the cascade failed."""

    def __init__(self, url: str, diagnostics: FetchDiagnostics) -> None:
        self.url = url
        self.diagnostics = diagnostics
        if diagnostics.attempts:
            details = "; ".join(
                f"{a.strategy}: {a.error_kind} ({a.duration_ms}ms)"
                + (f" {a.error_message}" if a.error_message else "")
                for a in diagnostics.attempts
            )
        else:
            details = "no strategies configured"
        super().__init__(f"All strategies failed for {url}. Attempts: {details}")

    @property
    def attempts(self):
        return self.diagnostics.attempts
