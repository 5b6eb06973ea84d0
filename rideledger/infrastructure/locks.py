"""
Redis-based distributed lock.

Used by the payment orchestrator so that only one API process talks to
the payment processor for a given booking at a time.  The database
unique constraint on ``payment_intents.booking_id`` and the processor's
idempotency key remain the final guard; the lock only keeps concurrent
retries from racing to the processor.

Implementation uses SET NX EX for acquire and a Lua script for
atomic check-and-delete on release.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis

from rideledger.domain.errors import ConflictError


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

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

    # context-manager support
    async def __aenter__(self):
        acquired = await self.acquire()
        if not acquired:
            raise ConflictError(f"Operation already in progress: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()


@asynccontextmanager
async def optional_lock(
    client: Optional[aioredis.Redis], key: str, ttl_seconds: int = 30
) -> AsyncIterator[Optional[DistributedLock]]:
    """Hold ``DistributedLock(key)`` when Redis is configured, else run unlocked."""
    if client is None:
        yield None
        return
    async with DistributedLock(client, key, ttl_seconds) as lock:
        yield lock
