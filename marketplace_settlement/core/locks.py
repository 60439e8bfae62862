"""
Per-key exclusive critical sections.

Every balance-affecting operation runs inside the critical section of the
seller it touches; settlement of a checkout session additionally holds the
session key, and webhook handling holds the event key. Keys are always taken
in the order event -> session -> seller.

Backends:
- memory: asyncio locks, correct for a single process
- redis: redis.asyncio Lock with a TTL, for several API workers
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from ..monitoring.metrics import metrics
from .errors import LockTimeout

logger = structlog.get_logger(__name__)


def seller_key(seller_id: str) -> str:
    return f"seller:{seller_id}"


def session_key(session_id: str) -> str:
    return f"checkout-session:{session_id}"


def event_key(event_id: str) -> str:
    return f"webhook-event:{event_id}"


class _MemoryLockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class SellerLockManager:
    """
    Async exclusive locks keyed by string, with a bounded wait.

    Example:
        async with lock_manager.hold(session_key(sid), seller_key(seller_id)):
            ...
    """

    def __init__(
        self,
        backend: str = "memory",
        redis_client: Optional[aioredis.Redis] = None,
        ttl_seconds: int = 30,
        acquire_timeout: float = 10.0,
        prefix: str = "settlement:lock:",
    ):
        """
        Initialize lock manager.

        Args:
            backend: "memory" or "redis"
            redis_client: Required for the redis backend
            ttl_seconds: Redis lock expiry, bounds the damage of a crashed holder
            acquire_timeout: Maximum wait before LockTimeout
            prefix: Redis key prefix
        """
        if backend == "redis" and redis_client is None:
            raise ValueError("redis backend requires a redis client")
        self.backend = backend
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.acquire_timeout = acquire_timeout
        self.prefix = prefix
        self._memory_locks: Dict[str, _MemoryLockEntry] = {}

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """
        Hold every key, acquired in the order given.

        Raises:
            LockTimeout: If any key cannot be acquired within acquire_timeout
        """
        if not keys:
            yield
            return

        first, rest = keys[0], keys[1:]
        async with self._hold_one(first):
            async with self.hold(*rest):
                yield

    @asynccontextmanager
    async def _hold_one(self, key: str) -> AsyncIterator[None]:
        if self.backend == "redis":
            async with self._hold_redis(key):
                yield
        else:
            async with self._hold_memory(key):
                yield

    @asynccontextmanager
    async def _hold_memory(self, key: str) -> AsyncIterator[None]:
        entry = self._memory_locks.get(key)
        if entry is None:
            entry = self._memory_locks[key] = _MemoryLockEntry()
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                metrics.record_lock("memory", "timeout")
                logger.warning("lock_acquisition_timeout", lock_key=key, backend="memory")
                raise LockTimeout(
                    "Timed out waiting for critical section",
                    lock_key=key,
                    timeout_seconds=self.acquire_timeout,
                )

            acquired_at = time.monotonic()
            metrics.record_lock("memory", "acquired")
            try:
                yield
            finally:
                entry.lock.release()
                metrics.record_lock("memory", "released", time.monotonic() - acquired_at)
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._memory_locks.pop(key, None)

    @asynccontextmanager
    async def _hold_redis(self, key: str) -> AsyncIterator[None]:
        if self.redis_client is None:
            raise ValueError("redis lock backend requires a redis client")
        lock = self.redis_client.lock(
            f"{self.prefix}{key}",
            timeout=self.ttl_seconds,
            blocking_timeout=self.acquire_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            metrics.record_lock("redis", "timeout")
            logger.warning("lock_acquisition_timeout", lock_key=key, backend="redis")
            raise LockTimeout(
                "Timed out waiting for critical section",
                lock_key=key,
                timeout_seconds=self.acquire_timeout,
            )

        acquired_at = time.monotonic()
        metrics.record_lock("redis", "acquired")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # TTL elapsed while held; another worker may have entered
                logger.error(
                    "lock_expired_while_held",
                    lock_key=key,
                    ttl_seconds=self.ttl_seconds,
                )
            metrics.record_lock("redis", "released", time.monotonic() - acquired_at)
