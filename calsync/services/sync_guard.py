"""Per-key claims that keep sync passes for one (user, calendar) from interleaving."""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set

from calsync import config
from calsync.exceptions import ConcurrencyError, SyncInProgressError

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""

# Lua script for atomic compare-and-extend
COMPARE_AND_PEXPIRE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("pexpire", KEYS[1], ARGV[2])
else
  return 0
end
"""


class SyncClaim:
    """A held claim. Passes call ``ensure_held`` before committing their cursor."""

    def __init__(self, key: str):
        self.key = key
        self.lost = False

    def ensure_held(self) -> None:
        if self.lost:
            raise ConcurrencyError(f"Sync claim for {self.key} was lost", detail={"key": self.key})


class SyncGuard(ABC):
    """
    A claim is taken before a sync pass and released after it. Claims are
    not held as locks across the pass's network calls: a second pass for
    the same key fails fast with SyncInProgressError instead of waiting.
    """

    @abstractmethod
    def claim(self, key: str) -> AsyncIterator[SyncClaim]:
        ...


class InMemorySyncGuard(SyncGuard):
    """Single-process guard."""

    def __init__(self):
        self._active: Set[str] = set()

    def is_active(self, key: str) -> bool:
        return key in self._active

    @asynccontextmanager
    async def claim(self, key: str):
        if key in self._active:
            raise SyncInProgressError(key)
        self._active.add(key)
        try:
            yield SyncClaim(key)
        finally:
            self._active.discard(key)


class RedisLease(SyncClaim):
    """Claim backed by a Redis key holding this worker's token."""

    def __init__(self, redis_client, key: str, lease_key: str, token: str, ttl_ms: int):
        super().__init__(key)
        self.redis = redis_client
        self.lease_key = lease_key
        self.token = token
        self.ttl_ms = ttl_ms

    def renew(self) -> bool:
        """Push the expiry out by a full TTL if the key still holds our token."""
        if self.lost:
            return False
        if not self.redis.eval(COMPARE_AND_PEXPIRE, 1, self.lease_key, self.token, self.ttl_ms):
            self.lost = True
            logger.warning(f"Sync lease {self.lease_key} expired or was taken over")
        return not self.lost

    def ensure_held(self) -> None:
        self.renew()
        super().ensure_held()


class RedisSyncLease(SyncGuard):
    """Token-based Redis lease for multi-worker deployments."""

    def __init__(
        self,
        redis_client,
        ttl_ms: int = config.SYNC_LEASE_TTL_MS,
        wait_attempts: int = 0,
        renew_interval: Optional[float] = None,
    ):
        """
        Args:
            redis_client: Synchronous Redis client (redis-py)
            ttl_ms: Lease TTL; bounds how long a crashed worker blocks the key
            wait_attempts: Short backoff retries before giving up
            renew_interval: Seconds between renewals while a pass runs
                (default: a third of the TTL)
        """
        self.redis = redis_client
        self.ttl_ms = ttl_ms
        self.wait_attempts = wait_attempts
        self.renew_interval = renew_interval if renew_interval is not None else ttl_ms / 3000

    async def _keep_alive(self, lease: RedisLease, released: asyncio.Event) -> None:
        while not released.is_set():
            try:
                await asyncio.wait_for(released.wait(), timeout=self.renew_interval)
            except asyncio.TimeoutError:
                try:
                    if not lease.renew():
                        return
                except Exception as e:
                    logger.warning(f"Failed to renew sync lease {lease.lease_key}: {e}")

    @asynccontextmanager
    async def claim(self, key: str):
        lease_key = f"calsync:sync_lease:{key}"
        token = str(uuid.uuid4())
        acquired = self.redis.set(lease_key, token, nx=True, px=self.ttl_ms)

        for i in range(self.wait_attempts):
            if acquired:
                break
            await asyncio.sleep(0.05 * (i + 1))
            acquired = self.redis.set(lease_key, token, nx=True, px=self.ttl_ms)

        if not acquired:
            raise SyncInProgressError(key)

        logger.debug(f"Acquired sync lease: {lease_key} (token: {token[:8]})")
        lease = RedisLease(self.redis, key, lease_key, token, self.ttl_ms)
        released = asyncio.Event()
        renewer = asyncio.create_task(self._keep_alive(lease, released))
        try:
            yield lease
        finally:
            released.set()
            await renewer
            try:
                # Only delete if we still own the lease
                self.redis.eval(COMPARE_AND_DELETE, 1, lease_key, token)
                logger.debug(f"Released sync lease: {lease_key}")
            except Exception as e:
                logger.warning(f"Failed to release sync lease {lease_key}: {e}")
