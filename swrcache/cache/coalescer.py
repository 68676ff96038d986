"""
Request coalescing and retries for cache fetches.

When multiple concurrent requests ask for the same key, only one fetch
runs and every requester observes its outcome through the store.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
)

from .bus import NotificationBus
from .core import CacheStore
from .options import QueryOptions

logger = logging.getLogger("cache.coordinator")

FetchFn = Callable[[], Union[Awaitable[Any], Any]]
WriteHook = Callable[[str, QueryOptions], None]


class FetchCoordinator:
    """
    Runs at most one fetch per key and applies the retry policy.

    Pattern:
    - First request for a key starts a task and records it as the entry's
      ``pending`` handle
    - Subsequent requests for the same key get that same task back
    - The task retries failed attempts per the query's retry/delay policy
    - On completion the result (or final error) is written to the store,
      the pending handle is cleared and subscribers are notified

    Usage:
        coordinator = FetchCoordinator(store, bus, clock=time.monotonic)
        task = coordinator.fetch("user:1", load_user, QueryOptions())
        await task
    """

    def __init__(
        self,
        store: CacheStore,
        bus: NotificationBus,
        clock: Callable[[], float],
        on_write: Optional[WriteHook] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Cache store to write results into
            bus: Bus notified after every write
            clock: Returns the current time in seconds
            on_write: Called with (key, options) after each write and notify
        """
        self._store = store
        self._bus = bus
        self._clock = clock
        self._on_write = on_write
        self._last_requests: Dict[str, Tuple[FetchFn, QueryOptions]] = {}
        self._tasks: Set[asyncio.Task] = set()
        # Latest task started per key; only it may write the key's outcome
        self._current: Dict[str, asyncio.Task] = {}
        # Keys evicted while their fetch was running; no further retries
        self._orphaned: Set[str] = set()
        self._log_retry = before_sleep_log(logger, logging.WARNING)

        self._stats = {
            "fetches": 0,
            "dedup_joins": 0,
            "retries": 0,
            "failures": 0,
            "discarded": 0,
        }

    def fetch(self, key: str, fetch_fn: FetchFn, options: QueryOptions) -> asyncio.Task:
        """
        Either join the in-flight fetch for a key or start a new one.

        Args:
            key: Cache key
            fetch_fn: Called once per attempt; may return an awaitable
            options: Retry, delay, dedupe and callback settings

        Returns:
            The task whose completion settles the key. It never raises fetch
            errors; those are written to the store.
        """
        entry = self._store.get(key)
        if entry is not None and entry.pending is not None:
            if options.dedupe:
                self._stats["dedup_joins"] += 1
                self._orphaned.discard(key)
                logger.debug(f"Joining in-flight fetch for {key}")
                return entry.pending
            logger.debug(f"Superseding in-flight fetch for {key} (dedupe disabled)")

        task = asyncio.get_running_loop().create_task(
            self._run(key, fetch_fn, options),
            name=f"swrcache-fetch:{key}",
        )
        self._store.set_pending(key, task)
        self._current[key] = task
        self._orphaned.discard(key)
        self._last_requests[key] = (fetch_fn, options)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._stats["fetches"] += 1
        logger.debug(f"Initiating fetch for {key}")
        return task

    async def _run(self, key: str, fetch_fn: FetchFn, options: QueryOptions) -> None:
        task = asyncio.current_task()
        # tenacity may consult wait before stop; decide once per attempt
        decisions: Dict[int, bool] = {}

        def will_retry(state: RetryCallState) -> bool:
            if state.attempt_number not in decisions:
                decisions[state.attempt_number] = self._will_retry(key, task, options, state)
            return decisions[state.attempt_number]

        def wait(state: RetryCallState) -> float:
            if not will_retry(state):
                return 0
            return options.delay_policy.delay_for(state.attempt_number)

        retrying = AsyncRetrying(
            stop=lambda state: not will_retry(state),
            wait=wait,
            retry=retry_if_exception_type(Exception),
            before_sleep=self._before_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    data = await _call_fetcher(fetch_fn)
        except asyncio.CancelledError:
            self._release(key, task)
            raise
        except Exception as e:
            self._settle_error(key, task, options, e)
            return
        self._settle_success(key, task, options, data)

    def _will_retry(
        self,
        key: str,
        task: asyncio.Task,
        options: QueryOptions,
        state: RetryCallState,
    ) -> bool:
        entry = self._store.get(key)
        if (
            entry is None
            or entry.pending is not task
            or self._current.get(key) is not task
            or key in self._orphaned
        ):
            # Evicted, invalidated or superseded while we were running
            logger.info(f"Abandoning retries for {key}: fetch is no longer active")
            return False
        return options.retry_policy.should_retry(state.attempt_number - 1)

    def _before_retry(self, state: RetryCallState) -> None:
        self._stats["retries"] += 1
        self._log_retry(state)

    def _owns_slot(self, key: str, task: asyncio.Task) -> bool:
        """True if ``task`` is the latest fetch started for the key."""
        return self._current.get(key) is task

    def _settle_success(
        self, key: str, task: asyncio.Task, options: QueryOptions, data: Any
    ) -> None:
        if not self._owns_slot(key, task):
            self._stats["discarded"] += 1
            logger.debug(f"Discarding superseded result for {key}")
            return

        self._store.set(key, data, None, self._clock())
        self._release(key, task)
        logger.debug(f"Fetch complete: {key}")
        self._bus.notify(key)
        if self._on_write is not None:
            self._on_write(key, options)
        if options.on_success is not None:
            options.on_success(data)

    def _settle_error(
        self, key: str, task: asyncio.Task, options: QueryOptions, error: Exception
    ) -> None:
        if not self._owns_slot(key, task):
            self._stats["discarded"] += 1
            logger.debug(f"Discarding superseded failure for {key}: {error}")
            return

        entry = self._store.get(key)
        previous = entry.data if entry is not None else None
        self._store.set(key, previous, error, self._clock())
        self._release(key, task)
        self._stats["failures"] += 1
        logger.warning(f"Fetch failed for {key}: {error!r}")
        self._bus.notify(key)
        if self._on_write is not None:
            self._on_write(key, options)
        if options.on_error is not None:
            options.on_error(error)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._current.get(key) is task:
            del self._current[key]
            self._orphaned.discard(key)
        entry = self._store.get(key)
        if entry is not None and entry.pending is task:
            self._store.clear_pending(key)

    def last_request(self, key: str) -> Optional[Tuple[FetchFn, QueryOptions]]:
        """The fetch function and options of the most recent fetch started for a key."""
        return self._last_requests.get(key)

    def forget(self, key: str) -> None:
        self._last_requests.pop(key, None)

    def abandon(self, key: str) -> bool:
        """
        Take write ownership of a key away from its running fetch.

        The task keeps running but stops retrying, and its outcome is
        discarded.

        Returns:
            True if a fetch was running for the key
        """
        task = self._current.pop(key, None)
        self._orphaned.discard(key)
        if task is None:
            return False
        logger.debug(f"Abandoned in-flight fetch for {key}")
        return True

    def orphan(self, key: str) -> None:
        """Let the running fetch for a key finish, without further retries."""
        if key in self._current:
            self._orphaned.add(key)

    def active_keys(self) -> List[str]:
        """Keys with a fetch that may still write its outcome."""
        return list(self._current)

    def cancel_all(self) -> List[asyncio.Task]:
        """
        Cancel every running fetch task.

        Returns:
            The cancelled tasks, so the caller can await them
        """
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        self._current.clear()
        self._orphaned.clear()
        self._last_requests.clear()
        return tasks

    @property
    def active_requests(self) -> int:
        """Number of currently running fetch tasks."""
        return len(self._tasks)

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        return {
            **self._stats,
            "active_requests": len(self._tasks),
            "active_keys": self.active_keys(),
            "orphaned_keys": sorted(self._orphaned),
        }


async def _call_fetcher(fetch_fn: FetchFn) -> Any:
    result = fetch_fn()
    if inspect.isawaitable(result):
        result = await result
    return result
