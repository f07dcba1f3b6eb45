"""Download of Discord attachments (text documents and avatar images)."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class AttachmentFetcher:
    """Fetches attachment content from the Discord CDN."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._client

    async def fetch_text(self, url: str) -> str | None:
        """Download a text attachment.

        Returns:
            The decoded body, or None when the server answered with a
            non-success status

        Raises:
            httpx.HTTPError: If the request itself fails
        """
        client = await self._ensure_client()
        response = await client.get(url)
        if not response.is_success:
            logger.warning(f"Attachment fetch returned {response.status_code}: {url}")
            return None
        return response.text

    async def fetch_bytes(self, url: str) -> bytes:
        """Download an attachment as raw bytes.

        Raises:
            httpx.HTTPStatusError: If the server answered with a non-success status
            httpx.HTTPError: If the request itself fails
        """
        client = await self._ensure_client()
        response = await client.get(url)
        response.raise_for_status()
        return response.content

    async def close(self) -> None:
        """Close the underlying HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
