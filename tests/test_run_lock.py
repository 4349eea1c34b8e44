"""Tests for run lock behavior."""

import asyncio
import json

import pytest
import redis.asyncio as redis

from listing_recon.config import settings
from listing_recon.worker.run_lock import (
    InMemoryRunLock,
    RunLockManager,
    get_run_lock,
    refresh_lock_heartbeat,
)

TEST_LOCK_KEY = "test:aggregation:run:lock"
TEST_HEARTBEAT_KEY = "test:aggregation:run:heartbeat"


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except Exception:
        return False


def _manager(**kwargs) -> RunLockManager:
    return RunLockManager(
        redis_url=settings.redis_url,
        lock_key=TEST_LOCK_KEY,
        heartbeat_key=TEST_HEARTBEAT_KEY,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_lock_acquire_refresh_release():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = _manager()
    await manager.force_unlock()

    run_id = "test_run_lock"
    token = await manager.acquire_lock(run_id, ttl_seconds=30)
    assert token is not None

    info = await manager.get_lock_info()
    assert info is not None
    assert info.get("run_id") == run_id
    assert info.get("token") == token

    refreshed = await manager.refresh_lock(run_id, token, ttl_seconds=30)
    assert refreshed is True

    released = await manager.safe_unlock(run_id, token=token)
    assert released is True

    info = await manager.get_lock_info()
    assert info is None
    await manager.close()


@pytest.mark.asyncio
async def test_lock_token_mismatch():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = _manager()
    await manager.force_unlock()

    run_id = "test_run_token"
    token = await manager.acquire_lock(run_id, ttl_seconds=30)
    assert token is not None

    released = await manager.safe_unlock(run_id, token="bad_token")
    assert released is False

    second = await manager.acquire_lock("another_run", ttl_seconds=30)
    assert second is None

    await manager.force_unlock()
    await manager.close()


@pytest.mark.asyncio
async def test_lock_without_heartbeat_is_reclaimed():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = _manager()
    await manager.force_unlock()
    client = await manager._get_redis()
    await client.set(TEST_LOCK_KEY, json.dumps({"run_id": "crashed", "token": "t"}), ex=30)

    token = await manager.acquire_lock("fresh_run", ttl_seconds=30)
    assert token is not None
    assert (await manager.get_lock_info())["run_id"] == "fresh_run"

    await manager.force_unlock()
    await manager.close()


@pytest.mark.asyncio
async def test_in_memory_lock_lifecycle():
    lock = InMemoryRunLock()
    token = await lock.acquire_lock("run_a", ttl_seconds=30)
    assert token

    assert await lock.acquire_lock("run_b", ttl_seconds=30) is None
    assert (await lock.get_lock_info())["run_id"] == "run_a"

    assert await lock.refresh_lock("run_a", token, ttl_seconds=30)
    assert not await lock.refresh_lock("run_a", "wrong", ttl_seconds=30)

    assert not await lock.safe_unlock("run_a", token="wrong")
    assert not await lock.safe_unlock("run_a")
    assert await lock.safe_unlock("run_a", token=token)
    assert await lock.get_lock_info() is None
    assert await lock.safe_unlock("run_a", token=token)


@pytest.mark.asyncio
async def test_in_memory_stale_lock_reclaimed():
    lock = InMemoryRunLock(stale_seconds=0)
    await lock.acquire_lock("crashed_run", ttl_seconds=30)
    await asyncio.sleep(0.01)

    token = await lock.acquire_lock("next_run", ttl_seconds=30)
    assert token
    assert (await lock.get_lock_info())["run_id"] == "next_run"


@pytest.mark.asyncio
async def test_in_memory_lock_expires():
    lock = InMemoryRunLock()
    await lock.acquire_lock("short_run", ttl_seconds=1)
    lock._expires_at = 0.0
    assert await lock.get_lock_info() is None
    assert await lock.acquire_lock("next_run", ttl_seconds=30)


@pytest.mark.asyncio
async def test_heartbeat_stops_after_repeated_failures():
    lock = InMemoryRunLock()
    await asyncio.wait_for(refresh_lock_heartbeat(lock, "ghost", "token", interval=0, ttl=30), timeout=1)


def test_get_run_lock_backends():
    assert isinstance(get_run_lock("memory"), InMemoryRunLock)
    assert isinstance(get_run_lock("redis"), RunLockManager)
    with pytest.raises(ValueError):
        get_run_lock("zookeeper")
