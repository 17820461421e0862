"""Contracts of the limiter's external collaborators and their failures.

CounterStore and LockService are Protocols: the limiter depends on these
shapes only, never on a concrete client. Backends live in redis_backend
(shared, multi-process) and memory_backend (single process, tests).

Failure taxonomy:
    LimiterError          — base for everything raised by this package
    CoordinationError     — infrastructure trouble; never a rate-limit verdict
      StoreUnavailableError — counter store unreachable or erroring
      LockAcquisitionError  — lock not obtained within the retry budget

A rate-limit verdict is not an exception: it is a Rejection value.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Protocol, runtime_checkable


class LimiterError(Exception):
    """Base class for errors raised by the limiter."""


class CoordinationError(LimiterError):
    """The limiter could not coordinate through its store or lock service."""


class StoreUnavailableError(CoordinationError):
    """A counter store operation failed."""

    def __init__(self, operation: str, key: str, reason: str) -> None:
        super().__init__(f"Counter store {operation} failed for {key!r}: {reason}")
        self.operation = operation
        self.key = key


class LockAcquisitionError(CoordinationError):
    """The cross-process lock could not be acquired."""

    def __init__(self, keys: Collection[str], reason: str) -> None:
        super().__init__(f"Could not lock {len(keys)} counter keys: {reason}")
        self.keys = frozenset(keys)


@runtime_checkable
class CounterStore(Protocol):
    """Integer counters with optional millisecond expiry.

    An absent key reads as None; callers treat it as 0.
    """

    async def get(self, key: str) -> int | None: ...

    async def set(self, key: str, value: int) -> None:
        """Set without expiry (concurrency counters)."""
        ...

    async def set_with_expiry(self, key: str, value: int, ttl_ms: int) -> None:
        """Set and start a new window of ``ttl_ms``."""
        ...

    async def set_preserving_expiry(
        self, key: str, value: int, *, restart_value: int, ttl_ms: int,
    ) -> None:
        """Set ``value`` and keep the expiry of the running window.

        If the key expired after it was read, a new window is started
        instead: ``restart_value`` with a fresh ``ttl_ms`` expiry. A counter
        must never be left without a TTL by this call.
        """
        ...

    async def remaining_ttl(self, key: str) -> int | None:
        """Milliseconds until expiry; None when absent or without expiry."""
        ...


class LockHandle(Protocol):
    """Opaque proof of a held lock, returned by LockService.acquire()."""

    @property
    def keys(self) -> frozenset[str]: ...


@runtime_checkable
class LockService(Protocol):
    """Exclusive, multi-key lock with a bounded lease."""

    async def acquire(self, keys: Collection[str], lease_ms: int) -> LockHandle:
        """Lock every key or none.

        Raises:
            LockAcquisitionError: If the keys stay held by someone else.
            StoreUnavailableError: If the backing service fails.
        """
        ...

    async def release(self, handle: LockHandle) -> None: ...
