"""
Per-request locking.

Every state change of a request runs under a lock keyed by the request id,
so transitions on one request are serialized while independent requests
proceed in parallel.  There is no global lock.

* ``LocalLockManager``  -- one ``asyncio.Lock`` per key, for a single process.
* ``RedisLockManager``  -- ``DistributedLock`` per key, for several API
  processes sharing one Redis.

``DistributedLock`` uses SET NX EX for acquire and a Lua script for atomic
check-and-delete on release.  Both managers raise ``Unavailable`` when the
lock cannot be obtained within the wait budget.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.errors import Unavailable

logger = logging.getLogger(__name__)


class LockManager(Protocol):
    def hold(self, key: str, wait: Optional[float] = None): ...


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire once. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def acquire_within(self, wait: float, poll: float = 0.05) -> bool:
        """Retry ``acquire`` until it succeeds or *wait* seconds pass."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while True:
            if await self.acquire():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll)

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        lua = """
        if redis.call("get", KEYS[1]) == ARGV[1] then
            return redis.call("del", KEYS[1])
        else
            return 0
        end
        """
        await self.redis.eval(lua, 1, self.key, self.token)


class LocalLockManager:
    def __init__(self, wait_seconds: float = 5.0):
        self.wait_seconds = wait_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str, wait: Optional[float] = None) -> AsyncIterator[None]:
        wait = self.wait_seconds if wait is None else wait
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            await self._acquire(lock, key, wait)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    @staticmethod
    async def _acquire(lock: asyncio.Lock, key: str, wait: float) -> None:
        if wait <= 0:
            if lock.locked():
                raise Unavailable(f"Lock {key} is busy")
            await lock.acquire()
            return
        try:
            await asyncio.wait_for(lock.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            raise Unavailable(f"Timed out waiting for lock {key}") from None


class RedisLockManager:
    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 30,
        wait_seconds: float = 5.0,
    ):
        self.redis = client
        self.ttl = ttl_seconds
        self.wait_seconds = wait_seconds

    @asynccontextmanager
    async def hold(self, key: str, wait: Optional[float] = None) -> AsyncIterator[None]:
        wait = self.wait_seconds if wait is None else wait
        lock = DistributedLock(self.redis, key, ttl_seconds=self.ttl)
        try:
            acquired = (
                await lock.acquire() if wait <= 0 else await lock.acquire_within(wait)
            )
        except RedisError as exc:
            raise Unavailable("Lock service unavailable") from exc
        if not acquired:
            raise Unavailable(f"Timed out waiting for lock {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except RedisError:
                logger.warning("Could not release %s; it expires in %ds", lock.key, self.ttl)
