"""Limiter — admits or rejects jobs against limits shared by every process.

Every process that uses the same store, limiter_id and rules acts as a single
limiter, even on different machines. One attempt goes through two short
critical sections around the job, never holding the lock while it runs:

    1. lock the call's counter keys  -> evaluate every limit
       rejected: unlock, return the Rejection (no counter changed)
       admitted: apply all staged writes, unlock
    2. run the job (no lock held)
    3. lock again -> give back the concurrency slots written in 1 -> unlock

Step 3 runs on every exit path: success, job failure, and cancellation.
Jobs/items counters are never given back; their window expires on its own.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Collection, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

from joblimiter.config import Settings
from joblimiter.limiter.evaluator import (
    CounterAction,
    LimitCall,
    WriteMode,
    build_rejection,
    evaluate_limits,
)
from joblimiter.limiter.keys import LimitIdentity, candidate_identities, derive_key, lock_keys
from joblimiter.limiter.redis_backend import RedisCounterStore, RedisLockService, create_redis_client
from joblimiter.limiter.store import CoordinationError, CounterStore, LockService, StoreUnavailableError
from joblimiter.observability import metrics
from joblimiter.rules.loader import load_rules, reload_rules
from joblimiter.rules.models import LimiterRules, Rejection, Threshold

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class AttemptResult(Generic[T]):
    """Outcome of Limiter.attempt(): a job result or a rejection, never both.

    Unpacks as ``result, rejection = await limiter.attempt(...)``.
    """

    result: T | None = None
    rejection: Rejection | None = None

    @property
    def admitted(self) -> bool:
        return self.rejection is None

    def __iter__(self) -> Iterator[Any]:
        yield self.result
        yield self.rejection


@dataclass(frozen=True)
class CounterSnapshot:
    """Read-only view of one counter a call would touch."""

    identity: LimitIdentity
    counter_key: str
    value: int
    ttl_ms: int | None
    threshold: Threshold | None


class Limiter:
    """Admission control for jobs, backed by a shared counter store.

    Args:
        store: Counter store shared by all cooperating processes.
        locks: Multi-key lock service shared by the same processes.
        rules: Active rule set.
        limiter_id: Identity mixed into every counter key.
        lock_lease_ms: Lease of each critical section's lock.
        key_prefix: Counter key prefix.
        default_kind: Kind used when a call passes none.
    """

    def __init__(
        self,
        store: CounterStore,
        locks: LockService,
        rules: LimiterRules,
        *,
        limiter_id: str,
        lock_lease_ms: int = 5000,
        key_prefix: str = "rl",
        default_kind: str | None = None,
    ) -> None:
        if lock_lease_ms <= 0:
            raise ValueError(f"lock_lease_ms must be greater than 0, got {lock_lease_ms}")
        self._store = store
        self._locks = locks
        self._rules = rules
        self._limiter_id = limiter_id
        self._lock_lease_ms = lock_lease_ms
        self._key_prefix = key_prefix
        self._default_kind = default_kind
        self._bypass = False

    @classmethod
    async def from_config(cls, settings: Settings, default_kind: str | None = None) -> Limiter:
        """Build a Redis-backed limiter from settings and the rules file.

        Raises:
            StoreUnavailableError: If Redis does not answer a PING.
        """
        rules = await load_rules(settings.rules_file_path)
        client = create_redis_client(settings.redis_url)
        store = RedisCounterStore(client)
        try:
            await store.ping()
        except StoreUnavailableError:
            await store.close()
            raise
        return cls(
            store=store,
            locks=RedisLockService(
                client,
                lock_prefix=settings.lock_prefix,
                retry_count=settings.lock_retry_count,
                retry_delay_ms=settings.lock_retry_delay_ms,
            ),
            rules=rules,
            limiter_id=settings.limiter_id,
            lock_lease_ms=settings.lock_lease_ms,
            key_prefix=settings.key_prefix,
            default_kind=default_kind,
        )

    @property
    def limiter_id(self) -> str:
        return self._limiter_id

    @property
    def rules(self) -> LimiterRules:
        """The currently active rule set."""
        return self._rules

    @property
    def bypassed(self) -> bool:
        return self._bypass

    def bypass(self) -> Limiter:
        """Skip all limit checks until unset_bypass() is called."""
        self._bypass = True
        return self

    def unset_bypass(self) -> Limiter:
        self._bypass = False
        return self

    async def reload_rules(self, file_path: str) -> str | None:
        """Load a new rule set from YAML and make it active.

        Calls already past admission still release exactly the slots they
        took under the previous rules.

        Returns:
            The unified diff against the previous rules, or None if unchanged.
        """
        new_rules, diff = await reload_rules(file_path, self._rules)
        self._rules = new_rules
        return diff

    async def attempt(
        self,
        namespace: str,
        key: str | int,
        job: Callable[[], Awaitable[T]],
        *,
        kind: str | None = None,
        item_count: int | None = None,
    ) -> AttemptResult[T]:
        """Run ``job`` if no configured limit would be exceeded.

        Args:
            namespace: Shared resource the limits apply to.
            key: Finer scope inside the namespace (e.g. an account id).
            job: Zero-argument coroutine function; awaited at most once.
            kind: Optional tag selecting per-kind limits.
            item_count: Units for maxItemsPerTimespan; items limits are only
                checked when this is given.

        Returns:
            AttemptResult with the job's result, or with a Rejection when a
            limit was exceeded (the job was not run).

        Raises:
            LockAcquisitionError: If the counter keys could not be locked.
            StoreUnavailableError: If the counter store failed during the check.
            ValueError: If item_count is negative or larger than an items ceiling.
            Exception: Whatever the job raises, unchanged.
        """
        if item_count is not None and item_count < 0:
            raise ValueError(f"item_count must not be negative, got {item_count}")
        if kind is None:
            kind = self._default_kind

        if self._bypass:
            metrics.record_attempt("bypassed")
            return AttemptResult(result=await job())

        call = LimitCall(
            limiter_id=self._limiter_id,
            namespace=namespace,
            key=str(key),
            kind=kind,
            item_count=item_count,
        )
        keys = lock_keys(self._limiter_id, call.namespace, call.key, kind, self._key_prefix)

        with structlog.contextvars.bound_contextvars(
            limiter_id=self._limiter_id,
            namespace=call.namespace,
            key=call.key,
            kind=kind,
        ):
            slots: list[str] = []
            try:
                try:
                    async with self._locked(keys, "check"):
                        outcome = await evaluate_limits(
                            self._store, self._rules, call, self._key_prefix,
                        )
                        if outcome.admitted:
                            slots = await self._commit(outcome.actions)
                except CoordinationError as exc:
                    metrics.record_attempt("error")
                    await logger.aerror(
                        "limit_check_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    raise

                if outcome.rejection is not None:
                    rejection = build_rejection(self._limiter_id, call.namespace, outcome.rejection)
                    metrics.record_attempt("rejected")
                    metrics.record_rejection(rejection.scope.value, rejection.type.value)
                    await logger.ainfo(
                        "limit_rejected",
                        scope=rejection.scope.value,
                        limit_type=rejection.type.value,
                        is_global=rejection.global_,
                        expires_in_ms=rejection.expires_in_ms,
                    )
                    return AttemptResult(rejection=rejection)

                metrics.record_attempt("admitted")
                metrics.RUNNING_JOBS.inc()
                try:
                    return AttemptResult(result=await job())
                finally:
                    metrics.RUNNING_JOBS.dec()
            finally:
                if slots:
                    await asyncio.shield(self._release_slots(keys, slots))

    async def inspect(
        self,
        namespace: str,
        key: str | int,
        kind: str | None = None,
    ) -> list[CounterSnapshot]:
        """Read every counter a call for (namespace, key, kind) would touch.

        Takes no lock; values may change while they are being read.
        """
        snapshots: list[CounterSnapshot] = []
        for identity in candidate_identities(self._limiter_id, namespace, str(key), kind):
            counter_key = derive_key(identity, self._key_prefix)
            snapshots.append(CounterSnapshot(
                identity=identity,
                counter_key=counter_key,
                value=await self._store.get(counter_key) or 0,
                ttl_ms=await self._store.remaining_ttl(counter_key),
                threshold=self._rules.threshold(identity.scope, identity.limit_type, identity.kind),
            ))
        return snapshots

    async def aclose(self) -> None:
        """Close the store's connection, if it owns one."""
        close = getattr(self._store, "close", None)
        if close is not None:
            await close()

    @asynccontextmanager
    async def _locked(self, keys: Collection[str], phase: str) -> AsyncIterator[None]:
        """Hold the lock on ``keys`` for the body; release on every exit path."""
        started = time.perf_counter()
        try:
            handle = await self._locks.acquire(keys, self._lock_lease_ms)
        except CoordinationError as exc:
            await logger.awarning("lock_acquire_failed", phase=phase, error=str(exc))
            raise
        metrics.observe_lock_wait(phase, time.perf_counter() - started)
        try:
            yield
        finally:
            try:
                await self._locks.release(handle)
            except CoordinationError as exc:
                # The lease expires on its own; nothing else to undo.
                await logger.awarning("lock_release_failed", phase=phase, error=str(exc))

    async def _apply(self, action: CounterAction) -> None:
        if action.mode is WriteMode.FRESH_WINDOW:
            await self._store.set_with_expiry(action.key, action.target, action.ttl_ms or 0)
        elif action.mode is WriteMode.CONTINUE_WINDOW:
            await self._store.set_preserving_expiry(
                action.key,
                action.target,
                restart_value=action.amount,
                ttl_ms=action.ttl_ms or 0,
            )
        else:
            await self._store.set(action.key, action.target)

    async def _commit(self, actions: list[CounterAction]) -> list[str]:
        """Apply staged writes concurrently. A failed write is logged and skipped.

        Returns:
            Keys of the concurrency slots actually taken. Only these are
            given back after the job.
        """
        results = await asyncio.gather(
            *(self._apply(action) for action in actions),
            return_exceptions=True,
        )
        taken: list[str] = []
        failed = 0
        for action, result in zip(actions, results):
            if isinstance(result, BaseException):
                failed += 1
                await logger.awarning(
                    "counter_write_failed",
                    counter_key=action.key,
                    mode=action.mode.value,
                    error=str(result),
                )
            elif action.mode is WriteMode.CONCURRENCY_BUMP:
                taken.append(action.key)
        if failed:
            metrics.record_write_failure("commit", failed)
        return taken

    async def _release_slots(self, keys: Collection[str], slots: list[str]) -> None:
        """Give back concurrency slots under the lock, flooring counters at 0."""
        try:
            async with self._locked(keys, "release"):
                for slot in slots:
                    try:
                        current = await self._store.get(slot) or 0
                        await self._store.set(slot, max(0, current - 1))
                    except CoordinationError as exc:
                        metrics.record_write_failure("release")
                        await logger.aerror(
                            "concurrency_release_failed",
                            counter_key=slot,
                            error=str(exc),
                        )
        except CoordinationError as exc:
            metrics.record_write_failure("release", len(slots))
            await logger.aerror(
                "concurrency_release_failed",
                counter_keys=slots,
                error=str(exc),
            )
