"""
Pytest configuration and shared fixtures for the discovery tests.

No test talks to a real provider: HTTP sessions and model clients are fakes.
"""

import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scholarlink.core.config import Settings


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        OPENAI_API_KEY=None,
        PERPLEXITY_API_KEY=None,
        SEMANTIC_SCHOLAR_API_KEY=None,
        CIRCUIT_FAILURE_THRESHOLD=5,
        CIRCUIT_MIN_WINDOW_CALLS=10,
        CIRCUIT_COOLDOWN_SECONDS=60.0,
        CIRCUIT_HALF_OPEN_MAX_PROBES=1,
        RATE_LIMIT_OVERFLOW_POLICY="reject",
        SYNTHESIS_BATCH_TIMEOUT=2.0,
    )
