"""Tests for the in-memory counter store and lock service."""

from __future__ import annotations

import asyncio

import pytest

from joblimiter.limiter.memory_backend import MemoryCounterStore, MemoryLockService
from joblimiter.limiter.store import CounterStore, LockAcquisitionError, LockService


class TestMemoryCounterStore:
    def test_satisfies_protocol(self, store) -> None:
        assert isinstance(store, CounterStore)

    async def test_absent_key(self, store) -> None:
        assert await store.get("missing") is None
        assert await store.remaining_ttl("missing") is None

    async def test_set_without_expiry(self, store, clock) -> None:
        await store.set("c", 3)
        clock.advance(10_000)
        assert await store.get("c") == 3
        assert await store.remaining_ttl("c") is None

    async def test_expiry(self, store, clock) -> None:
        await store.set_with_expiry("c", 1, ttl_ms=1500)
        assert await store.remaining_ttl("c") == 1500
        clock.advance(1.0)
        assert await store.get("c") == 1
        assert await store.remaining_ttl("c") == 500
        clock.advance(0.5)
        assert await store.get("c") is None

    async def test_preserving_expiry_keeps_window(self, store, clock) -> None:
        await store.set_with_expiry("c", 1, ttl_ms=1000)
        clock.advance(0.6)
        await store.set_preserving_expiry("c", 2, restart_value=1, ttl_ms=1000)
        assert await store.get("c") == 2
        assert await store.remaining_ttl("c") == 400
        clock.advance(0.5)
        assert await store.get("c") is None

    async def test_preserving_expiry_after_lapse_starts_new_window(self, store, clock) -> None:
        await store.set_with_expiry("c", 1, ttl_ms=1000)
        clock.advance(1.0)
        await store.set_preserving_expiry("c", 2, restart_value=1, ttl_ms=1000)
        assert await store.get("c") == 1
        assert await store.remaining_ttl("c") == 1000
        clock.advance(1.0)
        assert await store.get("c") is None


class TestMemoryLockService:
    def test_satisfies_protocol(self, locks) -> None:
        assert isinstance(locks, LockService)

    async def test_acquire_and_release(self, locks) -> None:
        handle = await locks.acquire({"a", "b"}, lease_ms=1000)
        assert handle.keys == {"a", "b"}
        assert locks.is_locked("a")
        await locks.release(handle)
        assert not locks.is_locked("a")
        assert not locks.is_locked("b")

    async def test_overlapping_keys_conflict(self, locks) -> None:
        await locks.acquire({"a", "b"}, lease_ms=1000)
        with pytest.raises(LockAcquisitionError) as exc_info:
            await locks.acquire({"b", "c"}, lease_ms=1000)
        assert exc_info.value.keys == {"b", "c"}
        # all-or-nothing: "c" was not taken by the failed attempt
        assert not locks.is_locked("c")

    async def test_disjoint_keys_do_not_conflict(self, locks) -> None:
        await locks.acquire({"a"}, lease_ms=1000)
        handle = await locks.acquire({"b"}, lease_ms=1000)
        assert handle.keys == {"b"}

    async def test_lease_expiry_frees_keys(self, locks, clock) -> None:
        await locks.acquire({"a"}, lease_ms=5000)
        clock.advance(5.0)
        handle = await locks.acquire({"a"}, lease_ms=5000)
        assert handle.keys == {"a"}

    async def test_stale_handle_does_not_release_new_holder(self, locks, clock) -> None:
        stale = await locks.acquire({"a"}, lease_ms=1000)
        clock.advance(1.0)
        await locks.acquire({"a"}, lease_ms=1000)
        await locks.release(stale)
        assert locks.is_locked("a")

    async def test_retries_until_released(self, clock) -> None:
        service = MemoryLockService(retry_count=3, retry_delay_ms=1, clock=clock)
        held = await service.acquire({"a"}, lease_ms=1000)

        async def _release_soon() -> None:
            await service.release(held)

        releaser = asyncio.create_task(_release_soon())
        handle = await service.acquire({"a"}, lease_ms=1000)
        await releaser
        assert handle.keys == {"a"}


def test_store_defaults_to_monotonic_clock() -> None:
    assert isinstance(MemoryCounterStore(), CounterStore)
