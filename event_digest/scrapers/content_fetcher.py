"""
Fetch a page through the markdown-rendering proxy.

The proxy (r.jina.ai by default) takes the target URL appended to its base URL and
returns the page as markdown with image and link summaries. No retries here:
callers decide whether a failed fetch is worth another attempt.
"""
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from event_digest.errors import InvalidInputError, UpstreamError

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."

PROXY_HEADERS = {
    "Accept": "text/plain",
    "X-Return-Format": "markdown",
    "X-With-Images-Summary": "true",
    "X-With-Links-Summary": "true",
}


def validate_url(url: str) -> str:
    """Return the stripped URL, or raise InvalidInputError if it is not an absolute http(s) URL."""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"Invalid URL format: {url!r}")
    return url


def truncate_content(content: str, max_bytes: int) -> str:
    """Cap content at max_bytes of UTF-8 and append an ellipsis marker if anything was cut."""
    encoded = content.encode("utf-8")
    if len(encoded) <= max_bytes:
        return content
    # Drop a trailing partial multi-byte character
    return encoded[:max_bytes].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


class ContentFetcher:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://r.jina.ai/",
        timeout: float = 30.0,
        max_bytes: int = 100_000,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._client = client

    async def fetch(self, url: str) -> str:
        """
        Fetch a URL as markdown text.

        Raises:
            InvalidInputError: url is not an absolute http(s) URL
            UpstreamError: missing API key, non-2xx response, timeout or network failure
        """
        url = validate_url(url)
        if not self.api_key:
            raise UpstreamError("Content fetch API key is not configured")

        headers = {**PROXY_HEADERS, "Authorization": f"Bearer {self.api_key}"}
        logger.info(f"Fetching content: {url}")

        try:
            if self._client is not None:
                response = await self._client.get(f"{self.base_url}{url}", headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(f"{self.base_url}{url}", headers=headers)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Content fetch timeout for {url}: {type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Content fetch network error for {url}: {type(e).__name__}") from e

        if not response.is_success:
            raise UpstreamError(
                f"Content fetch request failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        content = truncate_content(response.text, self.max_bytes)
        logger.info(f"Fetched {len(content)} characters from {url}")
        return content
