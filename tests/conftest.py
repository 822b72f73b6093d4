"""Shared fixtures for the test suite."""

import pytest


class FakeClock:
    """Manually advanced time source returning UNIX seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
