"""Shared fixtures for abuseguard tests."""

import pytest

from abuseguard.app.limiter.store import InMemoryStore, reset_store

START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the global store before and after each test."""
    reset_store()
    yield
    reset_store()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()
