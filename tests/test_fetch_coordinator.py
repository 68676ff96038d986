"""
Tests for fetch deduplication, retries and result writing.
"""
import asyncio

import pytest

from swrcache.cache import CacheStore, FetchCoordinator, NotificationBus, QueryOptions


@pytest.fixture
def store():
    return CacheStore()


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def coordinator(store, bus, clock):
    return FetchCoordinator(store, bus, clock)


def options(**overrides):
    values = {"retry": 0, "retry_delay": 0}
    values.update(overrides)
    return QueryOptions(**values)


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_fetch(coordinator, make_fetcher):
    fetcher = make_fetcher("value", delay=0.01)

    tasks = [coordinator.fetch("k", fetcher, options()) for _ in range(5)]
    await asyncio.gather(*tasks)

    assert fetcher.calls == 1
    assert all(task is tasks[0] for task in tasks)
    assert coordinator.get_stats()["dedup_joins"] == 4


@pytest.mark.asyncio
async def test_later_request_does_not_override_running_fetch(coordinator, store, make_fetcher):
    first = make_fetcher("from-first", delay=0.01)
    second = make_fetcher("from-second")

    task = coordinator.fetch("k", first, options())
    coordinator.fetch("k", second, options())
    await task

    assert store.get("k").data == "from-first"
    assert second.calls == 0


@pytest.mark.asyncio
async def test_success_writes_store_and_notifies(coordinator, store, bus, clock, make_fetcher):
    seen = []
    successes = []
    bus.subscribe("k", lambda: seen.append(store.get("k").pending))

    await coordinator.fetch("k", make_fetcher(42), options(on_success=successes.append))

    entry = store.get("k")
    assert entry.data == 42
    assert entry.error is None
    assert entry.timestamp == clock.now
    assert entry.pending is None
    # Pending is cleared before subscribers run
    assert seen == [None]
    assert successes == [42]


@pytest.mark.asyncio
async def test_pending_is_set_while_fetch_runs(coordinator, store, make_fetcher):
    task = coordinator.fetch("k", make_fetcher("v", delay=0.01), options())

    assert store.get("k").pending is task
    assert coordinator.active_requests == 1
    await task
    assert store.get("k").pending is None


@pytest.mark.asyncio
async def test_retries_until_success(coordinator, store, make_fetcher):
    fetcher = make_fetcher(IOError("down"), IOError("down"), "result")

    await coordinator.fetch("k", fetcher, options(retry=2, retry_delay=0.01))

    assert fetcher.calls == 3
    assert store.get("k").data == "result"
    assert store.get("k").error is None
    assert coordinator.get_stats()["retries"] == 2


@pytest.mark.asyncio
async def test_pending_stays_set_across_retries(coordinator, store, make_fetcher):
    fetcher = make_fetcher(IOError("down"), "result")
    task = coordinator.fetch("k", fetcher, options(retry=1, retry_delay=0.05))

    await asyncio.sleep(0.02)
    assert fetcher.calls == 1
    assert store.get("k").pending is task
    # A request during the retry delay joins the same sequence
    assert coordinator.fetch("k", make_fetcher("other"), options()) is task
    await task


@pytest.mark.asyncio
async def test_exhausted_retries_keep_previous_data(coordinator, store, bus, make_fetcher):
    store.set("k", "old", None, 1.0)
    errors = []
    notifications = []
    bus.subscribe("k", lambda: notifications.append(1))
    fetcher = make_fetcher(ValueError("bad"))

    task = coordinator.fetch("k", fetcher, options(retry=1, on_error=errors.append))
    result = await task

    assert result is None
    assert fetcher.calls == 2
    entry = store.get("k")
    assert entry.data == "old"
    assert isinstance(entry.error, ValueError)
    assert entry.pending is None
    assert errors == [entry.error]
    assert notifications == [1]
    assert coordinator.get_stats()["failures"] == 1


@pytest.mark.asyncio
async def test_success_clears_previous_error(coordinator, store, make_fetcher):
    store.set("k", "old", ValueError("bad"), 1.0)

    await coordinator.fetch("k", make_fetcher("new"), options())

    assert store.get("k").error is None
    assert store.get("k").data == "new"


@pytest.mark.asyncio
async def test_computed_retry_receives_retry_count(coordinator, make_fetcher):
    seen = []

    def should_retry(failures):
        seen.append(failures)
        return failures < 2

    fetcher = make_fetcher(IOError("down"))
    await coordinator.fetch("k", fetcher, options(retry=should_retry))

    assert seen == [0, 1, 2]
    assert fetcher.calls == 3


@pytest.mark.asyncio
async def test_computed_delay_receives_attempt_number(coordinator, make_fetcher):
    seen = []

    def delay(attempt):
        seen.append(attempt)
        return 0

    await coordinator.fetch(
        "k", make_fetcher(IOError("down")), options(retry=2, retry_delay=delay)
    )

    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_retries_stop_when_entry_is_evicted(coordinator, store, make_fetcher):
    fetcher = make_fetcher(IOError("down"), delay=0.01)

    task = coordinator.fetch("k", fetcher, options(retry=5, retry_delay=0.01))
    store.delete("k")
    await task

    assert fetcher.calls == 1
    # The final failure recreates a one-shot entry
    assert isinstance(store.get("k").error, IOError)


@pytest.mark.asyncio
async def test_dedupe_disabled_supersedes_running_fetch(coordinator, store, make_fetcher):
    slow = make_fetcher("old", delay=0.05)
    fast = make_fetcher("new")

    first = coordinator.fetch("k", slow, options())
    second = coordinator.fetch("k", fast, options(dedupe=False))
    assert second is not first
    assert store.get("k").pending is second

    await second
    await first

    assert store.get("k").data == "new"
    assert coordinator.get_stats()["discarded"] == 1


@pytest.mark.asyncio
async def test_abandoned_fetch_neither_writes_nor_retries(coordinator, store, make_fetcher):
    fetcher = make_fetcher(IOError("down"), "late", delay=0.01)

    task = coordinator.fetch("k", fetcher, options(retry=3, retry_delay=0.01))
    store.delete("k")
    assert coordinator.abandon("k") is True
    await task

    assert fetcher.calls == 1
    assert store.get("k") is None
    assert coordinator.get_stats()["discarded"] == 1
    assert coordinator.abandon("k") is False


@pytest.mark.asyncio
async def test_orphaned_fetch_writes_without_retrying(coordinator, store, make_fetcher):
    fetcher = make_fetcher(IOError("down"), delay=0.01)

    task = coordinator.fetch("k", fetcher, options(retry=3, retry_delay=0.01))
    coordinator.orphan("k")
    await task

    assert fetcher.calls == 1
    assert isinstance(store.get("k").error, IOError)
    assert coordinator.get_stats()["orphaned_keys"] == []


@pytest.mark.asyncio
async def test_joining_an_orphaned_fetch_resumes_retries(coordinator, store, make_fetcher):
    fetcher = make_fetcher(IOError("down"), "ok", delay=0.01)
    opts = options(retry=3, retry_delay=0.01)

    task = coordinator.fetch("k", fetcher, opts)
    coordinator.orphan("k")
    assert coordinator.fetch("k", fetcher, opts) is task
    await task

    assert fetcher.calls == 2
    assert store.get("k").data == "ok"


@pytest.mark.asyncio
async def test_sync_fetch_function_is_supported(coordinator, store):
    await coordinator.fetch("k", lambda: {"plain": True}, options())
    assert store.get("k").data == {"plain": True}


@pytest.mark.asyncio
async def test_write_hook_runs_after_each_write(store, bus, clock, make_fetcher):
    writes = []
    coordinator = FetchCoordinator(
        store, bus, clock, on_write=lambda key, opts: writes.append(key)
    )

    await coordinator.fetch("a", make_fetcher(1), options())
    await coordinator.fetch("b", make_fetcher(ValueError("x")), options())

    assert writes == ["a", "b"]


@pytest.mark.asyncio
async def test_last_request_and_cancel_all(coordinator, make_fetcher):
    fetcher = make_fetcher("v", delay=1.0)
    task = coordinator.fetch("k", fetcher, options())

    assert coordinator.last_request("k")[0] is fetcher
    cancelled = coordinator.cancel_all()
    assert cancelled == [task]
    with pytest.raises(asyncio.CancelledError):
        await task
    assert coordinator.last_request("k") is None
