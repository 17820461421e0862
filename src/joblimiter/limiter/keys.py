"""Counter key derivation.

Pure functions with no I/O, state, clock or randomness. The derived key is
the coordination primitive between independent processes, so the same
identity must map to the same string in every process and across restarts.

Key layout::

    {prefix}:{limiter_id}:{scope}:{limit_type}:{namespace}:{key}:{kind}

Every variable component is percent-encoded (":" included), and an absent
key or kind is written as a bare "*", which can never be the encoding of a
real value. Distinct identities therefore never share a counter.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from joblimiter.rules.models import LimitType, Scope

DEFAULT_KEY_PREFIX = "rl"
_ABSENT = "*"


@dataclass(frozen=True)
class LimitIdentity:
    """Everything that identifies one counter.

    For namespace-scoped counters the key is ignored: they are shared by
    every key in the namespace.
    """

    limiter_id: str
    scope: Scope
    limit_type: LimitType
    namespace: str
    key: str | None = None
    kind: str | None = None


def _encode(part: str | None) -> str:
    if part is None:
        return _ABSENT
    return quote(part, safe="")


def derive_key(identity: LimitIdentity, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Map a limit identity to its counter key.

    Args:
        identity: The (limiter, scope, type, namespace, key, kind) tuple.
        prefix: Store-wide key prefix.

    Returns:
        The counter key string.
    """
    key = identity.key if identity.scope is Scope.KEY else None
    return ":".join((
        prefix,
        _encode(identity.limiter_id),
        identity.scope.value,
        identity.limit_type.value,
        _encode(identity.namespace),
        _encode(key),
        _encode(identity.kind),
    ))


def candidate_identities(
    limiter_id: str,
    namespace: str,
    key: str,
    kind: str | None = None,
) -> list[LimitIdentity]:
    """Every identity a call could touch, configured or not.

    Covers both scopes and all three limit types, globally and, when a kind
    is given, per kind.
    """
    kinds: tuple[str | None, ...] = (None, kind) if kind is not None else (None,)
    return [
        LimitIdentity(
            limiter_id=limiter_id,
            scope=scope,
            limit_type=limit_type,
            namespace=namespace,
            key=key if scope is Scope.KEY else None,
            kind=k,
        )
        for limit_type in LimitType
        for k in kinds
        for scope in Scope
    ]


def lock_keys(
    limiter_id: str,
    namespace: str,
    key: str,
    kind: str | None = None,
    prefix: str = DEFAULT_KEY_PREFIX,
) -> frozenset[str]:
    """The superset of counter keys a call must lock before checking."""
    return frozenset(
        derive_key(identity, prefix)
        for identity in candidate_identities(limiter_id, namespace, key, kind)
    )
