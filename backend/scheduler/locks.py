"""
Single-owner locks for the scheduler tick.

Only one scheduler may run due tasks at a time, otherwise two processes
would pick up the same task. ``LocalSchedulerLock`` covers one process;
``RedisSchedulerLock`` covers a fleet of workers sharing a Redis.
"""

import asyncio
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

logger = structlog.get_logger()

LOCK_NAME = "stocksentry:scheduler:tick"


class SchedulerLock(ABC):
    @abstractmethod
    async def acquire(self) -> bool:
        """Try once, without waiting. True when this caller now owns the lock."""

    @abstractmethod
    async def release(self) -> None:
        ...

    async def close(self) -> None:
        return None


class LocalSchedulerLock(SchedulerLock):
    def __init__(self):
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        return True

    async def release(self) -> None:
        if self._lock.locked():
            self._lock.release()


class RedisSchedulerLock(SchedulerLock):
    """Redis lock with a TTL so a crashed owner cannot wedge the scheduler."""

    def __init__(self, redis_url: str, ttl_seconds: int = 600, name: str = LOCK_NAME, client=None):
        self._client = client or aioredis.from_url(redis_url)
        self._lock = self._client.lock(name, timeout=ttl_seconds)

    async def acquire(self) -> bool:
        return bool(await self._lock.acquire(blocking=False))

    async def release(self) -> None:
        try:
            await self._lock.release()
        except LockError as exc:
            # TTL expired mid-tick; another owner may already hold it
            logger.warning("scheduler.lock_release_failed", error=str(exc))

    async def close(self) -> None:
        await self._client.aclose()


def build_scheduler_lock(backend: str, redis_url: str, ttl_seconds: int) -> SchedulerLock:
    if backend == "redis":
        return RedisSchedulerLock(redis_url, ttl_seconds)
    if backend == "local":
        return LocalSchedulerLock()
    raise ValueError(f"Unknown scheduler lock backend: {backend}")
