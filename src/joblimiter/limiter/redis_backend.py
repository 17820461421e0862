"""Redis-backed counter store and lock service (shared across processes).

Counters are plain string integers:
    GET / SET key v PX ttl / SET key v XX KEEPTTL / SET key v / PTTL key

Continuing a window uses XX so an expired key is never recreated without a
TTL; when XX finds nothing the write starts a new window with PX instead.

Locks are one redis-py lock per counter key, named ``{lock_prefix}{key}``
so they never collide with the counters themselves. Keys are always locked in
sorted order, so two callers with overlapping key sets cannot deadlock; a
partial acquisition is rolled back before giving up.

Every RedisError is translated into StoreUnavailableError so callers can
tell infrastructure failure apart from a rate-limit rejection.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError, RedisError

from joblimiter.limiter.store import LockAcquisitionError, StoreUnavailableError

logger = structlog.get_logger()

# PTTL sentinels
_PTTL_MISSING = -2
_PTTL_PERSISTENT = -1


def create_redis_client(redis_url: str) -> Redis:
    """Create an asyncio Redis client that decodes replies to str."""
    return Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)


@asynccontextmanager
async def _store_errors(operation: str, key: str) -> AsyncIterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailableError(operation, key, str(exc)) from exc


class RedisCounterStore:
    """CounterStore over a redis.asyncio client.

    Args:
        client: A connected (or lazily connecting) redis.asyncio.Redis.
    """

    def __init__(self, client: Redis) -> None:
        self._redis = client

    async def ping(self) -> None:
        """Round-trip to the server; raises StoreUnavailableError when down."""
        async with _store_errors("ping", "-"):
            await self._redis.ping()

    async def get(self, key: str) -> int | None:
        async with _store_errors("get", key):
            raw = await self._redis.get(key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError as exc:
            raise StoreUnavailableError("get", key, f"non-integer value {raw!r}") from exc

    async def set(self, key: str, value: int) -> None:
        async with _store_errors("set", key):
            await self._redis.set(key, value)

    async def set_with_expiry(self, key: str, value: int, ttl_ms: int) -> None:
        async with _store_errors("set_with_expiry", key):
            await self._redis.set(key, value, px=ttl_ms)

    async def set_preserving_expiry(
        self, key: str, value: int, *, restart_value: int, ttl_ms: int,
    ) -> None:
        async with _store_errors("set_preserving_expiry", key):
            # XX: never recreate an expired key without a TTL
            updated = await self._redis.set(key, value, xx=True, keepttl=True)
            if updated is None:
                await self._redis.set(key, restart_value, px=ttl_ms)

    async def remaining_ttl(self, key: str) -> int | None:
        async with _store_errors("remaining_ttl", key):
            pttl = await self._redis.pttl(key)
        if pttl in (_PTTL_MISSING, _PTTL_PERSISTENT) or pttl is None:
            return None
        return int(pttl)

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass(frozen=True)
class RedisLockHandle:
    keys: frozenset[str]
    locks: tuple[Lock, ...]


class RedisLockService:
    """Multi-key LockService built from redis-py locks.

    The whole key set shares one wait deadline of ``retry_count *
    retry_delay_ms``, capped at half the lease, so keys taken early are still
    held when the last one is acquired. Once every key is held, all leases are
    restarted so they expire together.

    Args:
        client: redis.asyncio.Redis client.
        lock_prefix: Prefix separating lock names from counter keys.
        retry_count: Polls of a busy key within the wait budget.
        retry_delay_ms: Delay between polls.
    """

    def __init__(
        self,
        client: Redis,
        *,
        lock_prefix: str = "lock:",
        retry_count: int = 10,
        retry_delay_ms: int = 200,
    ) -> None:
        self._redis = client
        self._lock_prefix = lock_prefix
        self._sleep = retry_delay_ms / 1000.0
        self._wait_budget = retry_count * retry_delay_ms / 1000.0

    def _lock_for(self, key: str, lease_ms: int) -> Lock:
        return self._redis.lock(
            f"{self._lock_prefix}{key}",
            timeout=lease_ms / 1000.0,
            sleep=self._sleep,
            blocking=True,
            thread_local=False,
        )

    def wait_deadline(self, lease_ms: int) -> float:
        """Seconds the whole acquisition may wait for a lease of ``lease_ms``."""
        return min(self._wait_budget, lease_ms / 2000.0)

    async def acquire(self, keys: Collection[str], lease_ms: int) -> RedisLockHandle:
        wanted = frozenset(keys)
        deadline = time.monotonic() + self.wait_deadline(lease_ms)
        acquired: list[Lock] = []
        try:
            for key in sorted(wanted):
                lock = self._lock_for(key, lease_ms)
                remaining = max(0.0, deadline - time.monotonic())
                async with _store_errors("lock", key):
                    ok = await lock.acquire(blocking_timeout=remaining)
                if not ok:
                    raise LockAcquisitionError(wanted, f"timed out waiting for {key!r}")
                acquired.append(lock)
            for lock in acquired[:-1]:
                await self._renew(lock, wanted)
        except BaseException:
            await self._release_all(acquired)
            raise
        return RedisLockHandle(keys=wanted, locks=tuple(acquired))

    async def _renew(self, lock: Lock, wanted: frozenset[str]) -> None:
        """Restart ``lock``'s lease; fail if it already lapsed."""
        try:
            await lock.reacquire()
        except LockNotOwnedError as exc:
            raise LockAcquisitionError(wanted, f"lease on {lock.name!r} lapsed while waiting") from exc
        except RedisError as exc:
            raise StoreUnavailableError("lock", str(lock.name), str(exc)) from exc

    async def release(self, handle: RedisLockHandle) -> None:
        await self._release_all(list(handle.locks))

    async def _release_all(self, locks: list[Lock]) -> None:
        failure: RedisError | None = None
        failed_name = "-"
        for lock in reversed(locks):
            try:
                await lock.release()
            except LockNotOwnedError:
                # Lease ran out; the key is already free or owned by someone else.
                await logger.awarning("lock_lease_expired", lock=str(lock.name))
            except RedisError as exc:
                if failure is None:
                    failure, failed_name = exc, str(lock.name)
        if failure is not None:
            raise StoreUnavailableError("unlock", failed_name, str(failure)) from failure
