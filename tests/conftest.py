"""Shared pytest fixtures."""

import pytest

from querycascade import CacheStore, QueryClient, create_client


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class Counter:
    """Async fetch function that counts calls and returns the count."""

    def __init__(self, make=lambda n: {"count": n}) -> None:
        self.calls = 0
        self._make = make

    async def __call__(self):
        self.calls += 1
        return self._make(self.calls)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> CacheStore:
    """Create a fresh CacheStore on the fake clock."""
    return CacheStore(clock=clock)


@pytest.fixture
async def client(clock: FakeClock):
    """Create a QueryClient on the fake clock, closed after the test."""
    client: QueryClient = create_client(
        default_stale="30s", default_retention="5m", clock=clock
    )
    yield client
    await client.close()


@pytest.fixture
def counter() -> Counter:
    return Counter()


@pytest.fixture
def make_counter() -> type[Counter]:
    return Counter
