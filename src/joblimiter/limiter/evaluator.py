"""Limit evaluation — decides admission and stages counter writes.

The (limit type x scope x global/kind) matrix is data: RULE_CHECKS lists the
cells in evaluation order and a single generic check walks them. The
evaluator only reads from the store. Writes are returned as CounterAction
value objects so the coordinator can apply all of them after every check has
passed. A call is never partially counted.

Evaluation order:
    1. maxConcurrentJobs   namespace, key, namespace/kind, key/kind
    2. maxJobsPerTimespan  same order
    3. maxItemsPerTimespan same order, only when an item count is supplied

Kind cells are skipped when the call has no kind. The first exceeded limit
stops evaluation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from joblimiter.limiter.keys import LimitIdentity, derive_key
from joblimiter.limiter.store import CounterStore
from joblimiter.rules.models import LimiterRules, LimitType, Rejection, Scope, Threshold


@dataclass(frozen=True)
class RuleCheck:
    """One cell of the rule matrix."""

    limit_type: LimitType
    scope: Scope
    per_kind: bool


RULE_CHECKS: tuple[RuleCheck, ...] = tuple(
    RuleCheck(limit_type=limit_type, scope=scope, per_kind=per_kind)
    for limit_type in (
        LimitType.MAX_CONCURRENT_JOBS,
        LimitType.MAX_JOBS_PER_TIMESPAN,
        LimitType.MAX_ITEMS_PER_TIMESPAN,
    )
    for per_kind in (False, True)
    for scope in (Scope.NAMESPACE, Scope.KEY)
)


@dataclass(frozen=True)
class LimitCall:
    """A candidate call: who wants to run what, and how big it is."""

    limiter_id: str
    namespace: str
    key: str
    kind: str | None = None
    item_count: int | None = None


class WriteMode(str, enum.Enum):
    """How a staged counter write treats expiry."""

    FRESH_WINDOW = "fresh_window"  # value was 0: start the window (set TTL)
    CONTINUE_WINDOW = "continue_window"  # keep the TTL; restart if it lapsed
    CONCURRENCY_BUMP = "concurrency_bump"  # no TTL; released after the job


@dataclass(frozen=True)
class CounterAction:
    """A deferred counter write produced by an admitted check."""

    key: str
    mode: WriteMode
    current: int
    amount: int
    ttl_ms: int | None = None

    @property
    def target(self) -> int:
        return self.current + self.amount


@dataclass(frozen=True)
class PartialRejection:
    """What the evaluator knows about an exceeded limit; see build_rejection()."""

    scope: Scope
    limit_type: LimitType
    key: str
    kind: str | None
    expires_in_ms: int | None


@dataclass
class EvaluationOutcome:
    """Either a rejection or the list of writes to commit."""

    rejection: PartialRejection | None = None
    actions: list[CounterAction] = field(default_factory=list)

    @property
    def admitted(self) -> bool:
        return self.rejection is None


def _amount_for(limit_type: LimitType, call: LimitCall) -> int:
    if limit_type is LimitType.MAX_ITEMS_PER_TIMESPAN:
        return call.item_count or 0
    return 1


def applicable_checks(call: LimitCall) -> list[RuleCheck]:
    """RULE_CHECKS filtered to the cells this call can hit."""
    return [
        check
        for check in RULE_CHECKS
        if (call.kind is not None or not check.per_kind)
        and (call.item_count is not None or check.limit_type is not LimitType.MAX_ITEMS_PER_TIMESPAN)
    ]


async def _check(
    store: CounterStore,
    check: RuleCheck,
    threshold: Threshold,
    call: LimitCall,
    key_prefix: str,
) -> PartialRejection | CounterAction:
    kind = call.kind if check.per_kind else None
    counter_key = derive_key(
        LimitIdentity(
            limiter_id=call.limiter_id,
            scope=check.scope,
            limit_type=check.limit_type,
            namespace=call.namespace,
            key=call.key,
            kind=kind,
        ),
        key_prefix,
    )
    amount = _amount_for(check.limit_type, call)
    if amount > threshold.count:
        # larger than the ceiling itself: no window can ever admit it
        raise ValueError(
            f"item_count {amount} exceeds the {check.scope.value} "
            f"{check.limit_type.value} ceiling of {threshold.count}",
        )
    current = await store.get(counter_key) or 0

    if current + amount > threshold.count:
        expires_in: int | None = None
        if check.limit_type.is_timespan:
            # A live window always has a TTL; report 0 rather than fail if not.
            expires_in = await store.remaining_ttl(counter_key) or 0
        return PartialRejection(
            scope=check.scope,
            limit_type=check.limit_type,
            key=call.key,
            kind=kind,
            expires_in_ms=expires_in,
        )

    if not check.limit_type.is_timespan:
        mode = WriteMode.CONCURRENCY_BUMP
    elif current == 0:
        mode = WriteMode.FRESH_WINDOW
    else:
        mode = WriteMode.CONTINUE_WINDOW
    return CounterAction(
        key=counter_key,
        mode=mode,
        current=current,
        amount=amount,
        ttl_ms=threshold.timespan_ms,
    )


async def evaluate_limits(
    store: CounterStore,
    rules: LimiterRules,
    call: LimitCall,
    key_prefix: str = "rl",
) -> EvaluationOutcome:
    """Check every configured limit for ``call`` without writing anything.

    Must run while the call's lock keys are held, otherwise two callers can
    both pass the same nearly-full counter.

    Args:
        store: Counter store to read from.
        rules: Active rule set.
        call: The candidate call.
        key_prefix: Counter key prefix.

    Returns:
        An EvaluationOutcome carrying the first rejection, or the staged
        writes when every check passed.

    Raises:
        StoreUnavailableError: If a counter read fails.
        ValueError: If item_count alone exceeds a configured items ceiling.
    """
    outcome = EvaluationOutcome()
    for check in applicable_checks(call):
        threshold = rules.threshold(
            check.scope,
            check.limit_type,
            call.kind if check.per_kind else None,
        )
        if threshold is None:
            continue
        result = await _check(store, check, threshold, call, key_prefix)
        if isinstance(result, PartialRejection):
            return EvaluationOutcome(rejection=result)
        outcome.actions.append(result)
    return outcome


def build_rejection(limiter_id: str, namespace: str, partial: PartialRejection) -> Rejection:
    """Attach the limiter identity and namespace to an evaluator rejection."""
    return Rejection(
        limiter_id=limiter_id,
        scope=partial.scope,
        type=partial.limit_type,
        namespace=namespace,
        key=partial.key,
        kind=partial.kind,
        global_=partial.kind is None,
        expires_in_ms=partial.expires_in_ms,
    )
