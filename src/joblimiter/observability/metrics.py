"""Prometheus metrics for limiter observability.

Exposes counters, histograms, and gauges for admission decisions, lock
waits, and best-effort counter writes that failed.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# --- Admission metrics ---

ATTEMPT_TOTAL = Counter(
    "joblimiter_attempt_total",
    "Total limiter attempts by outcome",
    ["outcome"],
)

REJECTION_TOTAL = Counter(
    "joblimiter_rejection_total",
    "Total rejected attempts by exceeded limit",
    ["scope", "type"],
)

# --- Lock metrics ---

LOCK_WAIT = Histogram(
    "joblimiter_lock_wait_seconds",
    "Time spent acquiring the cross-process lock",
    ["phase"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# --- Counter write metrics ---

COUNTER_WRITE_FAILURES = Counter(
    "joblimiter_counter_write_failures_total",
    "Counter writes that failed and were skipped",
    ["phase"],
)

# --- Running jobs ---

RUNNING_JOBS = Gauge(
    "joblimiter_running_jobs",
    "Admitted jobs currently running in this process",
)


def record_attempt(outcome: str) -> None:
    """Record an attempt outcome: admitted, rejected, bypassed, or error."""
    ATTEMPT_TOTAL.labels(outcome=outcome).inc()


def record_rejection(scope: str, limit_type: str) -> None:
    """Record which limit rejected an attempt."""
    REJECTION_TOTAL.labels(scope=scope, type=limit_type).inc()


def observe_lock_wait(phase: str, seconds: float) -> None:
    """Record lock acquisition latency for the check or release phase."""
    LOCK_WAIT.labels(phase=phase).observe(seconds)


def record_write_failure(phase: str, count: int = 1) -> None:
    """Record failed counter writes during commit or release."""
    COUNTER_WRITE_FAILURES.labels(phase=phase).inc(count)


def get_metrics_text() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()
