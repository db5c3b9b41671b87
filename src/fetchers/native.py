# src/fetchers/native.py — v1
"""Native fetch strategy: plain HTTP GET through httpx.

Cheap and fast, but it does not execute JavaScript and is the first thing
bot protection blocks. Non-2xx responses are classified into FetchError
kinds so the cascade diagnostics say why an attempt failed.
"""

from __future__ import annotations

import logging

import httpx

from tierfetch.core.errors import FetchError
from tierfetch.strategy.base_fetcher import BaseFetcher, classify_status
from tierfetch.strategy.models import FetchedContent

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "tierfetch/0.1"


class NativeFetcher(BaseFetcher):
    """HTTP fetcher with redirect following and env proxy support."""

    name = "native"

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        trust_env: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            trust_env=trust_env,
        )

    async def attempt(self, url: str, timeout_s: float) -> FetchedContent:
        try:
            resp = await self._client.get(url, timeout=timeout_s)
        except httpx.TimeoutException as e:
            raise FetchError("timeout", f"{type(e).__name__}: {e}", strategy=self.name) from e
        except httpx.TransportError as e:
            raise FetchError("network", f"{type(e).__name__}: {e}", strategy=self.name) from e

        kind = classify_status(resp.status_code)
        if kind is not None:
            raise FetchError(
                kind,
                f"HTTP {resp.status_code}",
                strategy=self.name,
                status_code=resp.status_code,
            )

        content_type = resp.headers.get("content-type", "text/html")
        media_type = content_type.split(";", 1)[0].strip().lower()
        body: str | bytes
        if media_type.startswith("text/") or media_type in _TEXT_TYPES:
            body = resp.text
        else:
            body = resp.content

        if not body or (isinstance(body, str) and not body.strip()):
            raise FetchError("empty", "empty response body", strategy=self.name, status_code=resp.status_code)

        logger.debug("Fetched %s (%d, %s)", url, resp.status_code, media_type)
        return FetchedContent(
            content=body,
            content_type=media_type or "text/html",
            status_code=resp.status_code,
            final_url=str(resp.url),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


_TEXT_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/rss+xml",
        "application/atom+xml",
        "application/javascript",
    }
)
