"""
Request Defense Gateway — Key/Value Store.

Small store interface shared by the rate limiter and the CSRF guard.
Two backends: a process-local in-memory store (default) and Redis for
deployments that run several gateway instances.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from redis.exceptions import RedisError, WatchError

from defense_gateway.storage.redis_client import RedisManager, redis_manager

logger = logging.getLogger("gateway.storage.kv")

Clock = Callable[[], int]


def epoch_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class StoreUnavailableError(RuntimeError):
    """Raised when the backing store cannot be reached."""


class KeyValueStore(ABC):
    """String key/value store with optional per-key TTL (milliseconds)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    @abstractmethod
    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        new: Optional[str],
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """
        Replace the value of ``key`` with ``new`` only if it currently
        equals ``expected`` (``None`` meaning "absent").
        ``new=None`` deletes the key. Returns True when the swap happened.
        """


class MemoryStore(KeyValueStore):
    """
    Process-local store.

    Every operation runs under one lock, so read-then-write sequences
    inside a single call are atomic across threads and tasks. Expired
    entries are dropped when read, and all of them are swept on the first
    write after each ``sweep_interval_ms``.
    """

    def __init__(self, clock: Clock = epoch_ms, sweep_interval_ms: int = 60_000) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[int]]] = {}
        self._lock = threading.Lock()
        self._sweep_interval_ms = sweep_interval_ms
        self._last_sweep_ms = clock()

    def __len__(self) -> int:
        return len(self._data)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key)

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        with self._lock:
            self._write(key, value, ttl_ms)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        new: Optional[str],
        ttl_ms: Optional[int] = None,
    ) -> bool:
        with self._lock:
            if self._read(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._write(key, new, ttl_ms)
            return True

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            return self._sweep(self._clock())

    # ── Internal (lock held) ─────────────────────────────

    def _read(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl_ms: Optional[int]) -> None:
        now = self._clock()
        if now - self._last_sweep_ms >= self._sweep_interval_ms:
            self._sweep(now)
        self._data[key] = (value, now + ttl_ms if ttl_ms else None)

    def _sweep(self, now: int) -> int:
        expired = [
            k for k, (_, exp) in self._data.items()
            if exp is not None and exp <= now
        ]
        for key in expired:
            del self._data[key]
        self._last_sweep_ms = now
        if expired:
            logger.debug("Swept %d expired key(s)", len(expired))
        return len(expired)


class RedisStore(KeyValueStore):
    """Shared store on Redis. Compare-and-swap uses WATCH / MULTI."""

    def __init__(self, manager: RedisManager = redis_manager) -> None:
        self._manager = manager

    def _client(self):
        client = self._manager.client
        if client is None:
            raise StoreUnavailableError("Redis is not connected")
        return client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client().get(key)
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        try:
            await self._client().set(key, value, px=ttl_ms or None)
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client().delete(*keys)
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        new: Optional[str],
        ttl_ms: Optional[int] = None,
    ) -> bool:
        client = self._client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if new is None:
                    pipe.delete(key)
                else:
                    pipe.set(key, new, px=ttl_ms or None)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as exc:
            raise StoreUnavailableError(str(exc)) from exc
