"""In-process counter store and lock service.

Per-process only: two processes using these share nothing. Useful for tests
and for single-process deployments that still want the limiter's rule model.
Expiry is evaluated lazily against an injectable monotonic clock.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from uuid import uuid4

from joblimiter.limiter.store import LockAcquisitionError


@dataclass
class _Entry:
    value: int
    expires_at: float | None


class MemoryCounterStore:
    """Dict-backed CounterStore with millisecond expiry.

    Args:
        clock: Time source in seconds (default time.monotonic).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> int | None:
        entry = self._live(key)
        return entry.value if entry else None

    async def set(self, key: str, value: int) -> None:
        self._entries[key] = _Entry(value=value, expires_at=None)

    async def set_with_expiry(self, key: str, value: int, ttl_ms: int) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_ms / 1000.0)

    async def set_preserving_expiry(
        self, key: str, value: int, *, restart_value: int, ttl_ms: int,
    ) -> None:
        entry = self._live(key)
        if entry is None:
            await self.set_with_expiry(key, restart_value, ttl_ms)
            return
        entry.value = value

    async def remaining_ttl(self, key: str) -> int | None:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0, round((entry.expires_at - self._clock()) * 1000))


@dataclass(frozen=True)
class MemoryLockHandle:
    keys: frozenset[str]
    token: str


class MemoryLockService:
    """All-or-nothing multi-key lock with lease expiry.

    Acquisition is retried ``retry_count`` times, ``retry_delay_ms`` apart,
    before giving up with LockAcquisitionError.
    """

    def __init__(
        self,
        *,
        retry_count: int = 10,
        retry_delay_ms: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retry_count = retry_count
        self._retry_delay = retry_delay_ms / 1000.0
        self._clock = clock
        self._held: dict[str, tuple[str, float]] = {}

    def _is_free(self, key: str, now: float) -> bool:
        holder = self._held.get(key)
        return holder is None or holder[1] <= now

    def _try_acquire(self, keys: frozenset[str], lease_ms: int) -> MemoryLockHandle | None:
        now = self._clock()
        if not all(self._is_free(k, now) for k in keys):
            return None
        token = uuid4().hex
        expires_at = now + lease_ms / 1000.0
        for k in keys:
            self._held[k] = (token, expires_at)
        return MemoryLockHandle(keys=keys, token=token)

    async def acquire(self, keys: Collection[str], lease_ms: int) -> MemoryLockHandle:
        wanted = frozenset(keys)
        for attempt in range(self._retry_count + 1):
            handle = self._try_acquire(wanted, lease_ms)
            if handle is not None:
                return handle
            if attempt < self._retry_count:
                await asyncio.sleep(self._retry_delay)
        raise LockAcquisitionError(
            wanted, f"still held after {self._retry_count} retries",
        )

    async def release(self, handle: MemoryLockHandle) -> None:
        # Only drop keys still held under this handle's token; an expired
        # lease may have been taken over by another caller.
        for k in handle.keys:
            holder = self._held.get(k)
            if holder is not None and holder[0] == handle.token:
                del self._held[k]

    def is_locked(self, key: str) -> bool:
        """True while ``key`` is held under an unexpired lease."""
        return not self._is_free(key, self._clock())
