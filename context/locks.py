"""
Per-conversation leases — serialize turns for one (tenant_id, channel_address).

A lease is a mutual-exclusion lock with a TTL: a worker that dies mid-turn
never blocks the conversation for longer than the TTL. Release is
token-checked, so a worker whose lease already expired cannot release a
lease that another worker now holds.

Backends:
  - InMemoryLockManager  (single process, asyncio)
  - RedisLockManager     (SET NX PX + Lua release, shared across processes)

Usage:
    async with locks.hold(conversation_key(tenant_id, address)):
        ...  # load, process, save
"""
from __future__ import annotations

import abc
import asyncio
import time
import uuid
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from config.settings import LockConfig

logger = structlog.get_logger()

_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class LockTimeout(Exception):
    """The lease could not be acquired within the wait timeout."""

    def __init__(self, key: str, waited: float):
        self.key = key
        self.waited = waited
        super().__init__(f"could not acquire lock {key} within {waited:.1f}s")


def conversation_key(tenant_id: str, channel_address: str) -> str:
    return f"{tenant_id}:{channel_address}"


class ConversationLockManager(abc.ABC):

    def __init__(self, ttl_seconds: float = 30.0, timeout_seconds: float = 5.0,
                 poll_interval: float = 0.02):
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval

    @abc.abstractmethod
    async def try_acquire(self, key: str, token: str) -> bool:
        """Take the lease if free or expired. Never blocks."""
        ...

    @abc.abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release the lease if `token` still owns it."""
        ...

    async def acquire(self, key: str, timeout: Optional[float] = None) -> str:
        """Wait up to `timeout` seconds for the lease. Returns the owner token."""
        timeout = self.timeout_seconds if timeout is None else timeout
        token = uuid.uuid4().hex
        started = time.monotonic()
        while True:
            if await self.try_acquire(key, token):
                waited = time.monotonic() - started
                if waited > self.poll_interval:
                    logger.debug("lock_acquired_after_wait", key=key, waited=round(waited, 3))
                return token
            if time.monotonic() - started >= timeout:
                logger.warning("lock_timeout", key=key, timeout=timeout)
                raise LockTimeout(key, timeout)
            await asyncio.sleep(self.poll_interval)

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[str]:
        token = await self.acquire(key, timeout)
        try:
            yield token
        finally:
            released = await self.release(key, token)
            if not released:
                logger.warning("lock_lease_lost", key=key)

    async def close(self) -> None:
        pass


class InMemoryLockManager(ConversationLockManager):

    def __init__(self, ttl_seconds: float = 30.0, timeout_seconds: float = 5.0,
                 poll_interval: float = 0.02):
        super().__init__(ttl_seconds, timeout_seconds, poll_interval)
        self._leases: dict[str, tuple[str, float]] = {}    # key → (token, expires_at)

    async def try_acquire(self, key: str, token: str) -> bool:
        now = time.monotonic()
        current = self._leases.get(key)
        if current is not None and current[1] > now:
            return False
        if current is not None:
            logger.warning("lock_lease_expired", key=key)
        self._leases[key] = (token, now + self.ttl_seconds)
        return True

    async def release(self, key: str, token: str) -> bool:
        current = self._leases.get(key)
        if current is None or current[0] != token:
            return False
        del self._leases[key]
        return True

    def is_locked(self, key: str) -> bool:
        current = self._leases.get(key)
        return current is not None and current[1] > time.monotonic()


class RedisLockManager(ConversationLockManager):
    """Leases shared by every worker process that points at the same Redis."""

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "conv-lock",
                 ttl_seconds: float = 30.0, timeout_seconds: float = 5.0,
                 poll_interval: float = 0.05, client=None):
        super().__init__(ttl_seconds, timeout_seconds, poll_interval)
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis = client

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._redis.ping()
            logger.info("redis_locks_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def try_acquire(self, key: str, token: str) -> bool:
        await self.connect()
        acquired = await self._redis.set(
            self._key(key), token, nx=True, px=int(self.ttl_seconds * 1000),
        )
        return bool(acquired)

    async def release(self, key: str, token: str) -> bool:
        await self.connect()
        deleted = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(key), token)
        return bool(deleted)


def create_lock_manager(config: LockConfig, ttl_seconds: float = 30.0,
                        timeout_seconds: float = 5.0) -> ConversationLockManager:
    if config.backend == "redis":
        logger.info("lock_manager_created", backend="redis")
        return RedisLockManager(
            redis_url=config.redis_url, key_prefix=config.key_prefix,
            ttl_seconds=ttl_seconds, timeout_seconds=timeout_seconds,
        )
    logger.info("lock_manager_created", backend="memory")
    return InMemoryLockManager(ttl_seconds=ttl_seconds, timeout_seconds=timeout_seconds)
