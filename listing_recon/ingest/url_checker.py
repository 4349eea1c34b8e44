"""Listing URL accessibility probe."""

import logging
import zlib
from typing import Optional

import httpx

from listing_recon.config import settings

logger = logging.getLogger(__name__)

_SKIP_MARKERS = ("/sample", "example.com")


def in_probe_sample(url: str, rate: float) -> bool:
    """Deterministic sampling: the same URL is always in or out of the sample."""
    if rate <= 0:
        return False
    if rate >= 1:
        return True
    bucket = zlib.crc32(url.encode("utf-8")) % 10_000
    return bucket < rate * 10_000


class UrlChecker:
    """HEAD-probes listing URLs; any failure means inaccessible."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        sample_rate: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.url_check_timeout_seconds
        self.sample_rate = sample_rate if sample_rate is not None else settings.url_check_sample_rate
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def in_sample(self, url: str) -> bool:
        return bool(url) and in_probe_sample(url, self.sample_rate)

    async def is_accessible(self, url: str) -> bool:
        if any(marker in url for marker in _SKIP_MARKERS):
            return True
        client = await self._get_client()
        try:
            response = await client.head(url)
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"URL probe failed for {url}: {e}")
            return False
