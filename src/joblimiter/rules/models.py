"""Pydantic models for the limiter rule set and its outcomes.

Defines the complete type system shared by the limiter:
- Enums: Scope (namespace/key) and LimitType (jobs, items, concurrency)
- Rule schema: mirrors the YAML/dict structure with strict validation
- Threshold: a resolved (count, timespan) pair for one counter
- Rejection: the structured record handed back when a limit is exceeded

The schema accepts both the camelCase keys of the shared configuration
format ("maxJobsPerTimespan", "timespan") and snake_case field names.
"""

from __future__ import annotations

import enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Scope(str, enum.Enum):
    """Counter family a rule applies to."""

    NAMESPACE = "namespace"
    KEY = "key"


class LimitType(str, enum.Enum):
    """The three limit axes. Values match the rule file keys."""

    MAX_CONCURRENT_JOBS = "maxConcurrentJobs"
    MAX_JOBS_PER_TIMESPAN = "maxJobsPerTimespan"
    MAX_ITEMS_PER_TIMESPAN = "maxItemsPerTimespan"

    @property
    def is_timespan(self) -> bool:
        """True for limits that count within a fixed, expiring window."""
        return self is not LimitType.MAX_CONCURRENT_JOBS


# --- Rule schema models ---


class Threshold(BaseModel):
    """A resolved ceiling for one counter. timespan_ms is None for concurrency."""

    model_config = ConfigDict(frozen=True)

    count: int
    timespan_ms: int | None = None


class TimespanLimit(BaseModel):
    """At most ``count`` units within a fixed window of ``timespan_ms``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    count: int = Field(gt=0)
    timespan_ms: int = Field(
        gt=0,
        validation_alias=AliasChoices("timespan", "timespanMs", "timespan_ms"),
    )

    def threshold(self) -> Threshold:
        return Threshold(count=self.count, timespan_ms=self.timespan_ms)


class TimespanRule(BaseModel):
    """maxJobsPerTimespan / maxItemsPerTimespan: a global window plus per-kind windows."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    global_: TimespanLimit | None = Field(default=None, alias="global")
    kinds: dict[str, TimespanLimit] = Field(default_factory=dict)

    def resolve(self, kind: str | None) -> Threshold | None:
        """Return the global threshold (kind=None) or the one for ``kind``."""
        if kind is None:
            return self.global_.threshold() if self.global_ is not None else None
        limit = self.kinds.get(kind)
        return limit.threshold() if limit is not None else None


class ConcurrencyRule(BaseModel):
    """maxConcurrentJobs: simultaneous running jobs, globally and per kind."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    global_: int | None = Field(default=None, gt=0, alias="global")
    kinds: dict[str, int] = Field(default_factory=dict)

    @field_validator("kinds")
    @classmethod
    def kind_counts_positive(cls, v: dict[str, int]) -> dict[str, int]:
        """Per-kind ceilings must be positive; omit a kind to leave it unconstrained."""
        bad = sorted(kind for kind, count in v.items() if count <= 0)
        if bad:
            raise ValueError(f"Concurrency limits must be greater than 0: {', '.join(bad)}")
        return v

    def resolve(self, kind: str | None) -> Threshold | None:
        count = self.global_ if kind is None else self.kinds.get(kind)
        return Threshold(count=count) if count is not None else None


class ScopeRules(BaseModel):
    """All limits configured for one scope. A missing rule means unconstrained."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    max_jobs_per_timespan: TimespanRule | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "maxJobsPerTimespan", "maxJobsPerTimestamp", "max_jobs_per_timespan",
        ),
    )
    max_items_per_timespan: TimespanRule | None = Field(
        default=None,
        validation_alias=AliasChoices("maxItemsPerTimespan", "max_items_per_timespan"),
    )
    max_concurrent_jobs: ConcurrencyRule | None = Field(
        default=None,
        validation_alias=AliasChoices("maxConcurrentJobs", "max_concurrent_jobs"),
    )

    def threshold(self, limit_type: LimitType, kind: str | None) -> Threshold | None:
        """Resolve the threshold for one limit type, globally or for ``kind``."""
        rule: TimespanRule | ConcurrencyRule | None
        if limit_type is LimitType.MAX_CONCURRENT_JOBS:
            rule = self.max_concurrent_jobs
        elif limit_type is LimitType.MAX_JOBS_PER_TIMESPAN:
            rule = self.max_jobs_per_timespan
        else:
            rule = self.max_items_per_timespan
        if rule is None:
            return None
        return rule.resolve(kind)


class LimiterRules(BaseModel):
    """Top-level rule set — validated against the rule file.

    Extra fields are forbidden. An empty rule set admits everything.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    namespace: ScopeRules | None = None
    keyspace: ScopeRules | None = None

    def threshold(
        self,
        scope: Scope,
        limit_type: LimitType,
        kind: str | None = None,
    ) -> Threshold | None:
        """Return the configured threshold for a (scope, type, kind) cell, if any."""
        scope_rules = self.namespace if scope is Scope.NAMESPACE else self.keyspace
        if scope_rules is None:
            return None
        return scope_rules.threshold(limit_type, kind)


# --- Outcome models ---


class Rejection(BaseModel):
    """Why a call was not admitted.

    expires_in_ms is the remaining window of the exceeded jobs/items counter
    and None for concurrency limits, which do not expire.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    limiter_id: str
    scope: Scope
    type: LimitType
    namespace: str
    key: str
    kind: str | None = None
    global_: bool = Field(alias="global")
    expires_in_ms: int | None = Field(default=None, ge=0)

    @property
    def retry_after_seconds(self) -> float:
        """Suggested wait before retrying, 0.0 when the limit has no window."""
        return (self.expires_in_ms or 0) / 1000.0
