"""Per-source rate limiting with jitter and exponential backoff."""

import asyncio
import logging
import random
import time
from collections import defaultdict

from listing_recon.config import settings

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_seconds: float = 1.0,
    multiplier: float = 2.0,
    max_seconds: float = 60.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at max_seconds."""
    return min(base_seconds * multiplier ** max(attempt - 1, 0), max_seconds)


class RateLimiter:
    """Minimum-interval rate limiter per source with jitter and cooldowns."""

    def __init__(self):
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_request: dict[str, float] = {}
        self.cooldowns: dict[str, float] = {}  # Source -> cooldown until (monotonic)

    async def acquire_with_interval(
        self,
        source: str,
        min_interval: float,
        max_interval: float,
        jitter: float = 0.0,
    ) -> float:
        """
        Wait until the source may be fetched again.

        Args:
            source: Source to rate limit
            min_interval: Minimum seconds between fetches
            max_interval: Maximum seconds between fetches
            jitter: Random jitter range in seconds (+/-)

        Returns:
            Seconds actually waited
        """
        async with self.locks[source]:
            waited = 0.0
            now = time.monotonic()

            cooldown_until = self.cooldowns.get(source, 0.0)
            if now < cooldown_until:
                wait_time = cooldown_until - now
                logger.debug(f"Source {source} in cooldown, waiting {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
                waited += wait_time
                now = time.monotonic()

            last_time = self.last_request.get(source)
            if last_time is not None:
                interval = random.uniform(min_interval, max_interval)
                if jitter > 0:
                    interval = max(min_interval, interval + random.uniform(-jitter, jitter))
                wait_needed = max(0.0, interval - (now - last_time))
                if wait_needed > 0:
                    await asyncio.sleep(wait_needed)
                    waited += wait_needed

            self.last_request[source] = time.monotonic()
            return waited

    def set_cooldown(self, source: str, seconds: float) -> None:
        """Block fetches for this source for ``seconds``."""
        self.cooldowns[source] = time.monotonic() + seconds

    async def wait_for_backoff(
        self,
        source: str,
        attempt: int,
        multiplier: float = 2.0,
        max_seconds: float | None = None,
    ) -> float:
        """
        Wait with exponential backoff after a failed fetch.

        Args:
            source: Source name
            attempt: Attempt number (1-based)
            multiplier: Backoff multiplier
            max_seconds: Maximum backoff time in seconds

        Returns:
            Seconds waited
        """
        wait_time = backoff_delay(
            attempt,
            base_seconds=settings.source_backoff_base_seconds,
            multiplier=multiplier,
            max_seconds=max_seconds if max_seconds is not None else settings.source_backoff_max_seconds,
        )
        logger.debug(f"Backing off {source} for {wait_time:.1f}s (attempt {attempt})")
        await asyncio.sleep(wait_time)
        return wait_time


# Global rate limiter instance
rate_limiter = RateLimiter()
