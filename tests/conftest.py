"""
Shared fixtures: engine with a controllable clock, and instrumented fetchers.
"""
import asyncio

import pytest
import pytest_asyncio

from config.settings import Settings
from swrcache.cache import CacheEngine, Signal


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingFetcher:
    """
    Async fetch function that counts invocations.

    Results are served in order; the last one repeats. A result that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, *results, delay: float = 0.0):
        self.results = list(results) or [None]
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        index = min(self.calls, len(self.results) - 1)
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        result = self.results[index]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        default_stale_time=0.0,
        default_cache_time=300.0,
        default_retry=0,
        default_retry_delay=0.0,
    )


@pytest_asyncio.fixture
async def engine(clock, test_settings):
    engine = CacheEngine(
        settings=test_settings,
        clock=clock,
        focus_signal=Signal("focus"),
        reconnect_signal=Signal("reconnect"),
    )
    yield engine
    await engine.close()


@pytest.fixture
def make_fetcher():
    return CountingFetcher


@pytest.fixture
def settle():
    """Wait until the in-flight fetch for a key (if any) has finished."""

    async def _settle(engine: CacheEngine, key: str) -> None:
        entry = engine.store.get(key)
        while entry is not None and entry.pending is not None:
            await asyncio.shield(entry.pending)
            entry = engine.store.get(key)

    return _settle
