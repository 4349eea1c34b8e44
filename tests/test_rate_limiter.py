"""Tests for per-source rate limiting."""

import pytest

from listing_recon.ingest.rate_limiter import RateLimiter, backoff_delay


def test_backoff_delay_grows_and_caps():
    assert backoff_delay(1, base_seconds=5) == 5
    assert backoff_delay(2, base_seconds=5) == 10
    assert backoff_delay(3, base_seconds=5) == 20
    assert backoff_delay(10, base_seconds=5, max_seconds=60) == 60


@pytest.mark.asyncio
async def test_first_fetch_does_not_wait():
    limiter = RateLimiter()
    waited = await limiter.acquire_with_interval("reddit_avexchange", 5.0, 10.0)
    assert waited == 0.0


@pytest.mark.asyncio
async def test_second_fetch_waits_min_interval():
    limiter = RateLimiter()
    await limiter.acquire_with_interval("head_fi", 0.05, 0.05)
    waited = await limiter.acquire_with_interval("head_fi", 0.05, 0.05)
    assert 0.0 < waited <= 0.05


@pytest.mark.asyncio
async def test_sources_are_independent():
    limiter = RateLimiter()
    await limiter.acquire_with_interval("head_fi", 5.0, 5.0)
    assert await limiter.acquire_with_interval("reverb", 5.0, 5.0) == 0.0


@pytest.mark.asyncio
async def test_cooldown_blocks_source():
    limiter = RateLimiter()
    limiter.set_cooldown("reverb", 0.05)
    waited = await limiter.acquire_with_interval("reverb", 0.0, 0.0)
    assert waited > 0.0
