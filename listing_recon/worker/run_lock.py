"""Run lock preventing overlapping aggregation runs."""

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from listing_recon import metrics
from listing_recon.config import settings

logger = logging.getLogger(__name__)

# Redis keys for the run lock
LOCK_KEY = "aggregation:run:lock"
HEARTBEAT_KEY = "aggregation:run:heartbeat"

# 0 = not found, 1 = deleted, 2 = mismatch
_UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    redis.call('DEL', KEYS[2])
    return 1
else
    return 2
end
"""

# 0 = not found, 1 = refreshed, 2 = mismatch
_REFRESH_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local cjson = require('cjson')
local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 0
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
    redis.call('SET', KEYS[2], ARGV[4], 'EX', ARGV[3])
    return 1
else
    return 2
end
"""


class RunLockManager:
    """
    Distributed run lock backed by Redis.

    Features:
    - TTL-based expiration
    - Heartbeat key tracking last refresh
    - Token-based ownership verification
    - Reclaim of a lock whose heartbeat is older than the stale window
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        stale_seconds: Optional[int] = None,
        lock_key: str = LOCK_KEY,
        heartbeat_key: str = HEARTBEAT_KEY,
    ):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            stale_seconds: Heartbeat age after which a held lock is reclaimed
            lock_key: Redis key holding the lock value
            heartbeat_key: Redis key holding the last heartbeat timestamp
        """
        self.redis_url = redis_url or settings.redis_url
        self.stale_seconds = stale_seconds if stale_seconds is not None else settings.run_lock_stale_seconds
        self.lock_key = lock_key
        self.heartbeat_key = heartbeat_key
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _try_set(self, run_id: str, ttl_seconds: int) -> Optional[str]:
        redis_client = await self._get_redis()
        token = uuid4().hex
        lock_value = json.dumps(
            {
                "run_id": run_id,
                "token": token,
                "started_at": datetime.utcnow().isoformat(),
            }
        )
        acquired = await redis_client.set(self.lock_key, lock_value, nx=True, ex=ttl_seconds)
        if not acquired:
            return None
        await redis_client.set(self.heartbeat_key, str(time.time()), ex=ttl_seconds)
        return token

    async def acquire_lock(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the run lock.

        A held lock whose heartbeat is missing or older than the stale
        window is force-cleared and acquisition is retried once.

        Args:
            run_id: Unique run identifier
            ttl_seconds: Time-to-live in seconds

        Returns:
            Token string if lock acquired, None if already held
        """
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        token = await self._try_set(run_id, ttl)
        if token:
            logger.info(f"Acquired run lock for run_id: {run_id[:16]}...")
            metrics.run_lock_events_total.labels(event="acquired").inc()
            return token

        heartbeat_age = await self.get_heartbeat_age()
        if heartbeat_age is None or heartbeat_age > self.stale_seconds:
            info = await self.get_lock_info()
            logger.warning(
                f"Reclaiming stale run lock (holder: {info.get('run_id') if info else None}, "
                f"heartbeat_age_s: {heartbeat_age})"
            )
            metrics.run_lock_events_total.labels(event="stale_reclaimed").inc()
            await self.force_unlock()
            token = await self._try_set(run_id, ttl)
            if token:
                logger.info(f"Acquired reclaimed run lock for run_id: {run_id[:16]}...")
                metrics.run_lock_events_total.labels(event="acquired").inc()
                return token

        metrics.run_lock_events_total.labels(event="skipped").inc()
        return None

    async def safe_unlock(self, run_id: str, token: Optional[str] = None) -> bool:
        """
        Release the lock only if run_id and token match (atomic).

        Returns:
            True if released or already gone, False on ownership mismatch
        """
        if not token:
            logger.warning("Unlock requested without token; refusing.")
            return False

        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(
                _UNLOCK_SCRIPT, 2, self.lock_key, self.heartbeat_key, run_id, token
            )
        except redis.RedisError as e:
            logger.error(f"Error executing unlock script: {e}")
            return False

        if result == 0:
            logger.debug("Lock already released")
            return True
        if result == 1:
            logger.info(f"Released run lock for run_id: {run_id[:16]}...")
            return True
        logger.warning(f"Attempted to release lock with mismatched token/run_id: requested={run_id[:16]}...")
        return False

    release_lock = safe_unlock

    async def force_unlock(self) -> bool:
        """Clear the lock without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        try:
            await redis_client.delete(self.lock_key, self.heartbeat_key)
            logger.warning("Force-cleared run lock and heartbeat keys")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to force unlock: {e}")
            return False

    async def refresh_lock(self, run_id: str, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Refresh lock TTL and heartbeat atomically.

        Returns:
            True if lock refreshed, False if not owned or expired
        """
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(
                _REFRESH_SCRIPT,
                2,
                self.lock_key,
                self.heartbeat_key,
                run_id,
                token,
                str(ttl),
                str(time.time()),
            )
        except redis.RedisError as e:
            logger.error(f"Error executing refresh script: {e}")
            return False

        if result == 1:
            logger.debug(f"Refreshed lock TTL for run_id: {run_id[:16]}...")
            return True
        if result == 0:
            logger.debug("Lock not found (may have expired)")
        else:
            logger.warning(f"Attempted to refresh lock with mismatched token/run_id: requested={run_id[:16]}...")
        return False

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with run_id, token, started_at, ttl_seconds, or None if no lock
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(self.lock_key)
        ttl = await redis_client.ttl(self.lock_key)
        if not value:
            return None
        try:
            data = json.loads(value)
            return {
                "run_id": data.get("run_id"),
                "token": data.get("token"),
                "started_at": data.get("started_at"),
                "ttl_seconds": ttl if ttl > 0 else None,
            }
        except json.JSONDecodeError as e:
            logger.error(f"Invalid lock value format: {e}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}

    async def get_heartbeat_age(self) -> Optional[float]:
        """Return seconds since last heartbeat, or None if missing."""
        redis_client = await self._get_redis()
        value = await redis_client.get(self.heartbeat_key)
        if not value:
            return None
        try:
            last_ts = float(value)
        except (ValueError, TypeError):
            return None
        return max(0.0, time.time() - last_ts)


class InMemoryRunLock:
    """Process-local lock with the same interface as RunLockManager."""

    def __init__(self, stale_seconds: Optional[int] = None):
        self.stale_seconds = stale_seconds if stale_seconds is not None else settings.run_lock_stale_seconds
        self._holder: Optional[Dict[str, Any]] = None
        self._expires_at: float = 0.0
        self._heartbeat: Optional[float] = None
        self._mutex = asyncio.Lock()

    def _expire(self) -> None:
        if self._holder and time.time() >= self._expires_at:
            self._holder = None
            self._heartbeat = None

    async def close(self):
        return None

    async def acquire_lock(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        async with self._mutex:
            self._expire()
            if self._holder:
                age = await self.get_heartbeat_age()
                if age is None or age > self.stale_seconds:
                    logger.warning(f"Reclaiming stale in-memory run lock (heartbeat_age_s: {age})")
                    metrics.run_lock_events_total.labels(event="stale_reclaimed").inc()
                    self._holder = None
                else:
                    metrics.run_lock_events_total.labels(event="skipped").inc()
                    return None
            token = uuid4().hex
            now = time.time()
            self._holder = {
                "run_id": run_id,
                "token": token,
                "started_at": datetime.utcnow().isoformat(),
            }
            self._expires_at = now + ttl
            self._heartbeat = now
            metrics.run_lock_events_total.labels(event="acquired").inc()
            logger.info(f"Acquired in-memory run lock for run_id: {run_id[:16]}...")
            return token

    def _owns(self, run_id: str, token: Optional[str]) -> bool:
        return bool(
            self._holder and self._holder["run_id"] == run_id and self._holder["token"] == token
        )

    async def safe_unlock(self, run_id: str, token: Optional[str] = None) -> bool:
        if not token:
            logger.warning("Unlock requested without token; refusing.")
            return False
        async with self._mutex:
            self._expire()
            if self._holder is None:
                return True
            if not self._owns(run_id, token):
                logger.warning(f"Attempted to release lock with mismatched token/run_id: requested={run_id[:16]}...")
                return False
            self._holder = None
            self._heartbeat = None
            return True

    release_lock = safe_unlock

    async def force_unlock(self) -> bool:
        async with self._mutex:
            self._holder = None
            self._heartbeat = None
        return True

    async def refresh_lock(self, run_id: str, token: str, ttl_seconds: Optional[int] = None) -> bool:
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        async with self._mutex:
            self._expire()
            if not self._owns(run_id, token):
                return False
            now = time.time()
            self._expires_at = now + ttl
            self._heartbeat = now
            return True

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        self._expire()
        if not self._holder:
            return None
        return {**self._holder, "ttl_seconds": max(0, int(self._expires_at - time.time()))}

    async def get_heartbeat_age(self) -> Optional[float]:
        if self._heartbeat is None:
            return None
        return max(0.0, time.time() - self._heartbeat)


async def refresh_lock_heartbeat(
    lock_manager,
    run_id: str,
    token: str,
    interval: int = 45,
    ttl: int = 7200,
) -> None:
    """
    Background task to refresh lock TTL periodically (heartbeat).

    Args:
        lock_manager: RunLockManager or InMemoryRunLock holding the lock
        run_id: Run identifier
        token: Ownership token returned by acquire_lock
        interval: Refresh interval in seconds
        ttl: TTL to set on each refresh
    """
    failure_count = 0
    try:
        while True:
            await asyncio.sleep(interval)
            refreshed = await lock_manager.refresh_lock(run_id, token, ttl)
            if refreshed:
                failure_count = 0
                continue
            failure_count += 1
            logger.warning(
                f"Heartbeat failed for run_id: {run_id[:16]}... (consecutive failures: {failure_count})"
            )
            if failure_count >= 3:
                logger.error(f"Heartbeat stopping after {failure_count} failures for run_id: {run_id[:16]}...")
                break
    except asyncio.CancelledError:
        logger.debug(f"Heartbeat cancelled for run_id: {run_id[:16]}...")
        raise


def get_run_lock(backend: Optional[str] = None):
    """Build the lock implementation selected by ``run_lock_backend``."""
    backend = (backend or settings.run_lock_backend).lower()
    if backend == "memory":
        return InMemoryRunLock()
    if backend == "redis":
        return RunLockManager()
    raise ValueError(f"Unknown run lock backend: {backend}")
