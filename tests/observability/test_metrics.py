"""Tests for Prometheus metric helpers."""

from __future__ import annotations

from prometheus_client import REGISTRY

from joblimiter.observability import metrics


def _value(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricHelpers:
    def test_record_attempt(self) -> None:
        before = _value("joblimiter_attempt_total", {"outcome": "admitted"})
        metrics.record_attempt("admitted")
        assert _value("joblimiter_attempt_total", {"outcome": "admitted"}) == before + 1

    def test_record_rejection(self) -> None:
        labels = {"scope": "namespace", "type": "maxJobsPerTimespan"}
        before = _value("joblimiter_rejection_total", labels)
        metrics.record_rejection("namespace", "maxJobsPerTimespan")
        assert _value("joblimiter_rejection_total", labels) == before + 1

    def test_observe_lock_wait(self) -> None:
        before = _value("joblimiter_lock_wait_seconds_count", {"phase": "check"})
        metrics.observe_lock_wait("check", 0.003)
        assert _value("joblimiter_lock_wait_seconds_count", {"phase": "check"}) == before + 1

    def test_record_write_failure_counts(self) -> None:
        before = _value("joblimiter_counter_write_failures_total", {"phase": "commit"})
        metrics.record_write_failure("commit", 3)
        assert _value("joblimiter_counter_write_failures_total", {"phase": "commit"}) == before + 3

    def test_metrics_text(self) -> None:
        metrics.record_attempt("bypassed")
        text = metrics.get_metrics_text().decode()
        assert "joblimiter_attempt_total" in text
        assert "joblimiter_running_jobs" in text
