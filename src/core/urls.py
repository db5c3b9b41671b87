# src/core/urls.py — v1
"""URL canonicalization, strategy prefixes and filesystem-safe slugs."""

from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

from tierfetch.core.errors import InvalidKeyError

_DEFAULT_PORTS = {"http": 80, "https": 443}
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_\-]")


def normalize_url(url: str) -> str:
    """Return the canonical form of a source URL.

    Scheme and host are lowercased, default ports and the fragment are
    dropped, and an empty path becomes ``/``. Query strings are kept as-is.

    Raises:
        InvalidKeyError: If the URL has no scheme or host or cannot be parsed.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidKeyError(f"Invalid URL: {url!r}")
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as e:
        raise InvalidKeyError(f"Invalid URL {url!r}: {e}") from e

    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        raise InvalidKeyError(f"Invalid URL {url!r}: scheme and host are required")

    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def url_prefix(url: str) -> str:
    """Return the strategy prefix for a URL: host[:port] plus its parent path.

    >>> url_prefix("https://yelp.com/biz/dolly-san-francisco")
    'yelp.com/biz/'
    >>> url_prefix("https://example.com/about")
    'example.com'
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return url
    if not host:
        return url

    host_with_port = f"{host}:{port}" if port else host
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) <= 1:
        return host_with_port
    return host_with_port + "/" + "/".join(segments[:-1]) + "/"


def url_slug(url: str) -> str:
    """Filesystem-safe slug embedding host and path (``example_com_docs_a``)."""
    parts = urlsplit(url)
    host = (parts.hostname or "unknown").replace(".", "_")
    path = parts.path.rstrip("/").replace("/", "_")
    slug = _UNSAFE_CHARS.sub("-", f"{host}{path}")
    return slug[:120]
