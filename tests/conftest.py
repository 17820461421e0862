"""Shared test fixtures for the joblimiter test suite.

Provides a controllable clock, in-memory store and lock service bound to it,
and the path of the example rules file.
"""

from pathlib import Path

import pytest

from joblimiter.limiter.memory_backend import MemoryCounterStore, MemoryLockService

TESTS_DIR = Path(__file__).parent
PROJECT_ROOT = TESTS_DIR.parent
EXAMPLE_RULES_PATH = PROJECT_ROOT / "rules" / "example.yaml"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryCounterStore:
    """In-memory counter store on the fake clock."""
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def locks(clock: FakeClock) -> MemoryLockService:
    """In-memory lock service that fails fast instead of waiting."""
    return MemoryLockService(retry_count=0, retry_delay_ms=0, clock=clock)


@pytest.fixture
def example_rules_path() -> Path:
    """Path to the example rules YAML shipped with the project."""
    return EXAMPLE_RULES_PATH
