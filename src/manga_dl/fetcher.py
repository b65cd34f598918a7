"""Remote page-image fetcher."""

import logging
from typing import Self

import httpx

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class AssetFetchError(Exception):
    """A single image could not be retrieved."""

    def __init__(self, url: str, cause: str, status_code: int | None = None):
        super().__init__(f"{url}: {cause}")
        self.url = url
        self.cause = cause
        self.status_code = status_code


class ImageFetcher:
    """Async client for chapter page images.

    Each ``fetch`` is independent: one failing image never affects another.
    """

    def __init__(self, http: httpx.AsyncClient):
        self._http = http

    @classmethod
    def create(
        cls,
        timeout: float = 15.0,
        user_agent: str = DEFAULT_USER_AGENT,
        referer: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Self:
        """Create a fetcher with a new HTTP client.

        The image host rejects hotlinked requests, so every request carries a
        browser User-Agent and the site's Referer.
        """
        headers = {"User-Agent": user_agent}
        if referer:
            headers["Referer"] = referer
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )
        return cls(http)

    async def fetch(self, url: str) -> bytes:
        """Download one image.

        Raises:
            AssetFetchError: On timeout, transport error or non-success status
        """
        try:
            response = await self._http.get(url)
        except httpx.TimeoutException as exc:
            raise AssetFetchError(url, "timed out") from exc
        except httpx.HTTPError as exc:
            raise AssetFetchError(url, str(exc) or type(exc).__name__) from exc
        except httpx.InvalidURL as exc:
            # Not an HTTPError; raised before any request is sent
            raise AssetFetchError(url, f"invalid URL: {exc}") from exc

        if not response.is_success:
            raise AssetFetchError(
                url, f"HTTP {response.status_code}", status_code=response.status_code
            )

        content = response.content
        if not content:
            raise AssetFetchError(url, "empty response body", status_code=response.status_code)

        logger.debug("Fetched %s (%d bytes)", url, len(content))
        return content

    async def close(self):
        """Close the HTTP client."""
        await self._http.aclose()
