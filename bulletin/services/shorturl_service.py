"""Link shortening collaborator backed by a YOURLS instance."""

import logging
from typing import Any, Protocol

import httpx

from bulletin.core.config import settings

logger = logging.getLogger(__name__)


class ShortUrlError(Exception):
    """Raised when shortening or stats lookup fails."""


class ShortUrlService(Protocol):
    """Maps long URLs to short URLs."""

    async def shorten(self, url: str) -> str: ...

    async def get_clicks(self, short_url: str) -> int: ...


class YourlsService:
    """Async client for the YOURLS API.

    Shortened URLs are cached per instance, so one instance shared across
    campaigns never asks for the same long URL twice.
    """

    def __init__(self, api_url: str, signature: str) -> None:
        self.api_url = api_url
        self.signature = signature
        self._cache: dict[str, str] = {}

    async def _call(self, method: str, params: dict[str, str]) -> dict[str, Any]:
        params = {**params, "format": "json", "signature": self.signature}
        async with httpx.AsyncClient(timeout=15.0) as client:
            if method == "POST":
                response = await client.post(self.api_url, data=params)
            else:
                response = await client.get(self.api_url, params=params)
        data: dict[str, Any] = response.json()
        return data

    async def shorten(self, url: str) -> str:
        """Return the short URL for ``url``.

        Raises:
            ShortUrlError: If the request fails or no short URL is returned.
        """
        cached = self._cache.get(url)
        if cached is not None:
            return cached

        try:
            data = await self._call("POST", {"action": "shorturl", "url": url})
        except (httpx.HTTPError, ValueError) as e:
            raise ShortUrlError(f"Failed to shorten URL: {e}") from e

        short_url = data.get("shorturl") or (data.get("url") or {}).get("shorturl")
        if not short_url:
            message = data.get("message") or "No short URL returned"
            raise ShortUrlError(f"Failed to shorten URL: {message}")

        self._cache[url] = short_url
        return str(short_url)

    async def get_clicks(self, short_url: str) -> int:
        """Return the click count YOURLS recorded for ``short_url``.

        Raises:
            ShortUrlError: If the request fails or stats are missing.
        """
        try:
            data = await self._call("GET", {"action": "url-stats", "shorturl": short_url})
        except (httpx.HTTPError, ValueError) as e:
            raise ShortUrlError(f"Failed to get click stats: {e}") from e

        link = data.get("link") or {}
        clicks = link.get("clicks")
        if clicks is None:
            raise ShortUrlError(f"Failed to get click stats: {data.get('message', 'no stats')}")
        try:
            return int(clicks)
        except (TypeError, ValueError) as e:
            raise ShortUrlError(f"Failed to get click stats: {clicks!r}") from e


_shorturl_service: YourlsService | None = None


def get_shorturl_service() -> YourlsService | None:
    """Return the configured shortener, or None when shortening is disabled."""
    global _shorturl_service
    if not settings.yourls_api_url or not settings.yourls_signature:
        return None
    if _shorturl_service is None:
        _shorturl_service = YourlsService(settings.yourls_api_url, settings.yourls_signature)
        logger.info("Link shortening enabled via %s", settings.yourls_api_url)
    return _shorturl_service
