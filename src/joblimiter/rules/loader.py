"""Reading rule files and swapping in new rule sets.

A rule file is one YAML mapping with optional ``namespace`` and ``keyspace``
sections. Parsing is yaml.safe_load() only.
"""

from __future__ import annotations

import difflib
from itertools import product

import aiofiles
import structlog
import yaml

from joblimiter.rules.models import LimiterRules, LimitType, Scope, Threshold

logger = structlog.get_logger()


def parse_rules(text: str, source: str = "<string>") -> LimiterRules:
    """Validate the YAML text of a rule file.

    Raises:
        yaml.YAMLError: On malformed YAML.
        ValueError: If the document is empty or not a mapping.
        pydantic.ValidationError: On unknown limit names or bad thresholds.
    """
    document = yaml.safe_load(text)
    if document is None:
        raise ValueError(f"Rules file is empty: {source}")
    if not isinstance(document, dict):
        raise ValueError(f"Rules file must contain a mapping at the top level: {source}")
    return LimiterRules.model_validate(document)


async def load_rules(file_path: str) -> LimiterRules:
    """Read and validate the rule file at ``file_path``.

    A file that cannot be read or validated raises; the limiter never falls
    back to running without limits. Errors are those of parse_rules(), plus
    FileNotFoundError.
    """
    async with aiofiles.open(file_path, mode="r", encoding="utf-8") as f:
        text = await f.read()
    rules = parse_rules(text, file_path)
    await logger.ainfo(
        "rules_loaded",
        file_path=file_path,
        namespace_rules=rules.namespace is not None,
        keyspace_rules=rules.keyspace is not None,
    )
    return rules


def _kinds(rules: LimiterRules) -> set[str]:
    kinds: set[str] = set()
    for scope_rules in (rules.namespace, rules.keyspace):
        if scope_rules is None:
            continue
        for rule in (
            scope_rules.max_concurrent_jobs,
            scope_rules.max_jobs_per_timespan,
            scope_rules.max_items_per_timespan,
        ):
            if rule is not None:
                kinds.update(rule.kinds)
    return kinds


def changed_limits(
    old: LimiterRules, new: LimiterRules,
) -> list[tuple[Scope, LimitType, str | None, Threshold | None, Threshold | None]]:
    """Every (scope, type, kind) cell whose threshold differs between two rule sets."""
    kinds: list[str | None] = [None, *sorted(_kinds(old) | _kinds(new))]
    changes = []
    for scope, limit_type, kind in product(Scope, LimitType, kinds):
        before = old.threshold(scope, limit_type, kind)
        after = new.threshold(scope, limit_type, kind)
        if before != after:
            changes.append((scope, limit_type, kind, before, after))
    return changes


def compute_rules_diff(old: LimiterRules, new: LimiterRules) -> str | None:
    """Unified diff of the two rule sets as JSON, or None when they match."""
    before = old.model_dump_json(indent=2, by_alias=True).splitlines(keepends=True)
    after = new.model_dump_json(indent=2, by_alias=True).splitlines(keepends=True)
    diff = "".join(difflib.unified_diff(before, after, "rules (before)", "rules (after)"))
    return diff or None


async def reload_rules(
    file_path: str,
    current_rules: LimiterRules | None = None,
) -> tuple[LimiterRules, str | None]:
    """Load ``file_path`` as the replacement for ``current_rules``.

    Counters are not touched: a tightened ceiling applies from the next
    check, a loosened one admits more right away.

    Returns:
        The new rules and the diff against ``current_rules`` (None when there
        were no current rules or nothing changed).
    """
    new_rules = await load_rules(file_path)
    if current_rules is None:
        return new_rules, None

    diff = compute_rules_diff(current_rules, new_rules)
    if diff is None:
        await logger.ainfo("rules_reloaded_no_changes", file_path=file_path)
        return new_rules, None

    for scope, limit_type, kind, before, after in changed_limits(current_rules, new_rules):
        await logger.ainfo(
            "limit_changed",
            scope=scope.value,
            limit_type=limit_type.value,
            kind=kind,
            before=before.count if before else None,
            after=after.count if after else None,
        )
    await logger.ainfo("rules_reloaded_with_changes", file_path=file_path, diff=diff)
    return new_rules, diff
