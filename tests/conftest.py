"""
Pytest configuration and fixtures for relay tests.
"""

import os
import tempfile

# Route per-run log files away from the working tree before any
# shared.logging import resolves LOG_DIR.
os.environ.setdefault("RELAY_LOG_DIR", tempfile.mkdtemp(prefix="relay-logs-"))

import pytest  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
