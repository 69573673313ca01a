"""
Per-order locks that serialize lifecycle actions.

Two implementations share the LockManager interface: an in-process map of
asyncio locks with a cancellable idle sweep, and a Redis lease for
deployments running more than one process.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

from redis.exceptions import RedisError

from orderflow.cache.redis_client import CacheKeyManager, RedisClient
from orderflow.core.exceptions import LockAcquisitionError, TransientInfraError
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class LockManager(Protocol):
    def lock(self, key: str) -> AsyncContextManager[None]:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0
    last_used: float = field(default_factory=time.monotonic)

    def idle_for(self, now: float) -> float:
        return now - self.last_used

    @property
    def busy(self) -> bool:
        return self.waiters > 0 or self.lock.locked()


class InMemoryLockManager:
    """
    Keyed asyncio locks for a single process.

    Entries are created on first use. The background sweep, started with
    start() and stopped with stop(), drops entries that have been idle for
    at least idle_ttl seconds.
    """

    def __init__(
        self,
        acquire_timeout: float = 30.0,
        sweep_interval: float = 60.0,
        idle_ttl: Optional[float] = None,
    ):
        self.acquire_timeout = acquire_timeout
        self.sweep_interval = sweep_interval
        self.idle_ttl = sweep_interval if idle_ttl is None else idle_ttl
        self._entries: Dict[str, _LockEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()

        entry.waiters += 1
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Lock acquisition timed out", key=key, timeout=self.acquire_timeout)
            raise LockAcquisitionError(
                f"Timed out waiting for lock {key}", key=key, timeout=self.acquire_timeout
            ) from e
        finally:
            entry.waiters -= 1

        try:
            yield
        finally:
            entry.last_used = time.monotonic()
            entry.lock.release()

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop idle, unheld entries. Returns how many were removed."""
        now = time.monotonic() if now is None else now
        stale = [
            key
            for key, entry in self._entries.items()
            if not entry.busy and entry.idle_for(now) >= self.idle_ttl
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Swept idle order locks", removed=len(stale), remaining=len(self._entries))
        return len(stale)

    async def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="order-lock-sweep")

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()


class RedisLockManager:
    """
    Distributed order locks on Redis.

    A lock is a key set with NX and a lease; release deletes it only when
    it still holds this holder's token.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        acquire_timeout: float = 30.0,
        lease_ms: int = 60_000,
        poll_interval: float = 0.05,
        key_manager: Optional[CacheKeyManager] = None,
    ):
        self.redis = redis_client
        self.acquire_timeout = acquire_timeout
        self.lease_ms = lease_ms
        self.poll_interval = poll_interval
        self.keys = key_manager or CacheKeyManager()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        redis_key = self.keys.make_key("lock", key)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.acquire_timeout

        try:
            while not await self.redis.set_if_absent(redis_key, token, self.lease_ms):
                if time.monotonic() >= deadline:
                    logger.warning("Lock acquisition timed out", key=redis_key)
                    raise LockAcquisitionError(
                        f"Timed out waiting for lock {key}",
                        key=key,
                        timeout=self.acquire_timeout,
                    )
                await asyncio.sleep(self.poll_interval)
        except RedisError as e:
            raise TransientInfraError("Lock backend unavailable", key=key) from e

        try:
            yield
        finally:
            try:
                released = await self.redis.delete_if_equals(redis_key, token)
            except RedisError as e:
                logger.error("Failed to release order lock", key=redis_key, error=str(e))
            else:
                if not released:
                    logger.warning("Order lock lease expired before release", key=redis_key)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None
