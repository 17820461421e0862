"""Tests for joblimiter.limiter.keys — determinism, injectivity, lock key sets."""

from __future__ import annotations

import itertools

import pytest

from joblimiter.limiter.keys import (
    LimitIdentity,
    candidate_identities,
    derive_key,
    lock_keys,
)
from joblimiter.rules.models import LimitType, Scope


def _identity(**overrides) -> LimitIdentity:
    fields = {
        "limiter_id": "limiter-a",
        "scope": Scope.KEY,
        "limit_type": LimitType.MAX_JOBS_PER_TIMESPAN,
        "namespace": "ns",
        "key": "acct-1",
        "kind": None,
    }
    fields.update(overrides)
    return LimitIdentity(**fields)


class TestDeriveKey:
    def test_same_identity_same_key(self) -> None:
        assert derive_key(_identity()) == derive_key(_identity())

    def test_known_layout(self) -> None:
        """The layout is shared with other processes and must not drift."""
        assert derive_key(_identity()) == "rl:limiter-a:key:maxJobsPerTimespan:ns:acct-1:*"
        assert (
            derive_key(_identity(scope=Scope.NAMESPACE, kind="export"), prefix="jobs")
            == "jobs:limiter-a:namespace:maxJobsPerTimespan:ns:*:export"
        )

    def test_namespace_scope_ignores_key(self) -> None:
        a = _identity(scope=Scope.NAMESPACE, key="acct-1")
        b = _identity(scope=Scope.NAMESPACE, key="acct-2")
        assert derive_key(a) == derive_key(b)

    @pytest.mark.parametrize("field,value", [
        ("limiter_id", "limiter-b"),
        ("scope", Scope.NAMESPACE),
        ("limit_type", LimitType.MAX_ITEMS_PER_TIMESPAN),
        ("limit_type", LimitType.MAX_CONCURRENT_JOBS),
        ("namespace", "other-ns"),
        ("key", "acct-2"),
        ("kind", "export"),
    ])
    def test_any_field_changes_key(self, field, value) -> None:
        assert derive_key(_identity(**{field: value})) != derive_key(_identity())

    def test_separator_in_values_cannot_collide(self) -> None:
        a = _identity(namespace="a:b", key="c")
        b = _identity(namespace="a", key="b:c")
        assert derive_key(a) != derive_key(b)

    def test_kind_named_like_absent_marker(self) -> None:
        assert derive_key(_identity(kind="*")) != derive_key(_identity(kind=None))

    def test_empty_kind_differs_from_no_kind(self) -> None:
        assert derive_key(_identity(kind="")) != derive_key(_identity(kind=None))

    def test_all_matrix_cells_distinct(self) -> None:
        keys = {
            derive_key(_identity(scope=scope, limit_type=limit_type, kind=kind))
            for scope, limit_type, kind in itertools.product(
                Scope, LimitType, (None, "export", "import"),
            )
        }
        assert len(keys) == len(Scope) * len(LimitType) * 3


class TestLockKeys:
    def test_without_kind_covers_global_cells(self) -> None:
        keys = lock_keys("limiter-a", "ns", "acct-1")
        assert len(keys) == 6
        assert all(k.endswith(":*") for k in keys)

    def test_with_kind_covers_global_and_kind_cells(self) -> None:
        keys = lock_keys("limiter-a", "ns", "acct-1", kind="export")
        assert len(keys) == 12
        assert sum(1 for k in keys if k.endswith(":export")) == 6

    def test_matches_derived_keys(self) -> None:
        identities = candidate_identities("limiter-a", "ns", "acct-1", "export")
        assert lock_keys("limiter-a", "ns", "acct-1", "export") == {
            derive_key(identity) for identity in identities
        }

    def test_deterministic(self) -> None:
        assert lock_keys("l", "ns", "k", "x") == lock_keys("l", "ns", "k", "x")
