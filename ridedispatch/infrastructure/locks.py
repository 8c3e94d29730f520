"""
Per-key mutual exclusion.

Every transition on a ride runs under the key ``ride:{id}`` and every
presence write under ``driver:{id}``; the lock is always taken ride first,
driver second.  Two backends share one interface, ``hold(key)``:

* ``InProcessLockManager`` -- an ``asyncio.Lock`` per key, created on demand
  and dropped once nobody holds or waits for it.  Enough for a single API
  process.
* ``RedisLockManager`` -- a ``DistributedLock`` per key for deployments with
  several API processes.  Acquire is SET NX EX, polled until the deadline;
  release is an atomic check-and-delete Lua script.

A wait longer than the configured timeout raises ``LockTimeout`` instead of
blocking the request indefinitely.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

import redis.asyncio as aioredis


class LockTimeout(Exception):
    """Raised when a lock could not be acquired within the bounded wait."""

    def __init__(self, key: str):
        super().__init__(f"Could not acquire lock: {key}")
        self.key = key


class LockManager(Protocol):
    def hold(
        self, key: str, timeout: Optional[float] = None
    ) -> AsyncContextManager[None]: ...


class InProcessLockManager:
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                async with asyncio.timeout(self.timeout if timeout is None else timeout):
                    await lock.acquire()
            except TimeoutError:
                raise LockTimeout(key) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class DistributedLock:
    _RELEASE_LUA = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try once. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def acquire_within(self, timeout: float, poll_interval: float = 0.05) -> bool:
        """Retry ``acquire`` until it succeeds or *timeout* seconds pass."""
        deadline = time.monotonic() + timeout
        while True:
            if await self.acquire():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(poll_interval, remaining))

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        await self.redis.eval(self._RELEASE_LUA, 1, self.key, self.token)


class RedisLockManager:
    def __init__(
        self, client: aioredis.Redis, timeout: float = 5.0, ttl_seconds: int = 30
    ):
        self.redis = client
        self.timeout = timeout
        self.ttl = ttl_seconds

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = DistributedLock(self.redis, key, ttl_seconds=self.ttl)
        if not await lock.acquire_within(self.timeout if timeout is None else timeout):
            raise LockTimeout(key)
        try:
            yield
        finally:
            await lock.release()
