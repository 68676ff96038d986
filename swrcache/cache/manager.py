"""
Main cache orchestration: queries, optimistic updates, invalidation and eviction.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from config.settings import Settings, settings as default_settings

from .bus import NotificationBus
from .coalescer import FetchCoordinator, FetchFn
from .core import CacheStore, QuerySnapshot, QueryState
from .lifecycle import QueryObserver
from .options import QueryOptions
from .signals import NullSignal, SignalSource

logger = logging.getLogger("cache.engine")


class CacheEngine:
    """
    In-memory stale-while-revalidate cache with:
    - Request deduplication for concurrent fetches of a key
    - Retries with configurable backoff
    - Change notifications for every bound consumer
    - Eviction of unobserved entries after a grace period

    Engines are constructed explicitly and passed to whatever needs them;
    there is no module-level instance. ``reset()`` returns an engine to its
    initial empty state, ``close()`` also makes it refuse new bindings.

    All methods must run on the event loop that executes the fetches.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        focus_signal: Optional[SignalSource] = None,
        reconnect_signal: Optional[SignalSource] = None,
    ):
        """
        Initialize the engine.

        Args:
            settings: Engine-wide option defaults (environment settings if omitted)
            clock: Returns the current time in seconds; used for freshness checks
            focus_signal: Fires when the host regains focus
            reconnect_signal: Fires when connectivity is restored
        """
        self.settings = settings or default_settings
        self.clock = clock
        self.store = CacheStore()
        self.bus = NotificationBus()
        self.focus_signal = focus_signal or NullSignal("focus")
        self.reconnect_signal = reconnect_signal or NullSignal("reconnect")
        self.coordinator = FetchCoordinator(
            self.store, self.bus, clock, on_write=self._after_write
        )

        self._observers: Dict[str, List[QueryObserver]] = {}
        self._eviction_timers: Dict[str, asyncio.TimerHandle] = {}
        self._closed = False
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "hits_fresh": 0,
            "misses": 0,
            "mutations": 0,
            "invalidations": 0,
            "evictions": 0,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    def default_options(self, **overrides: Any) -> QueryOptions:
        """Options built from the engine settings, with overrides applied."""
        return QueryOptions.from_settings(self.settings, **overrides)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def query(
        self,
        key: str,
        fetch_fn: FetchFn,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> QueryObserver:
        """
        Bind a consumer to a key.

        Args:
            key: Cache key identifying the data source and its parameters
            fetch_fn: Loads the data; called afresh for every attempt
            options: Query options (engine defaults if omitted)
            **overrides: Individual option fields, e.g. ``stale_time=5``

        Returns:
            A bound QueryObserver exposing data, error, is_loading,
            is_validating, mutate() and refetch()
        """
        if options is None:
            options = self.default_options(**overrides)
        else:
            options = options.with_overrides(**overrides)

        if options.initial_data is not None:
            entry = self.store.get(key)
            if entry is None or not entry.has_value:
                self.store.set(key, options.initial_data, None, self.clock())
                logger.debug(f"Seeded {key} with initial data")
                self.bus.notify(key)

        observer = QueryObserver(self, key, fetch_fn, options)
        return observer.bind()

    def mutate(self, key: str, value: Any) -> Any:
        """
        Optimistically write a value for a key, without fetching.

        Args:
            key: Cache key
            value: The new data, or a callable receiving the current data
                and returning the new data

        Returns:
            The data written
        """
        entry = self.store.get(key)
        current = entry.data if entry is not None else None
        data = value(current) if callable(value) else value

        self.store.set(key, data, None, self.clock())
        self._stats["mutations"] += 1
        logger.debug(f"Mutated {key}")
        self.bus.notify(key)
        self._after_write(key, None)
        return data

    def invalidate(self, key: Optional[str] = None) -> int:
        """
        Drop cached data so the next query refetches.

        Bound observers are notified and refetch right away.

        Args:
            key: Entry to drop; every entry when omitted

        Returns:
            Number of entries removed
        """
        self._stats["invalidations"] += 1
        if key is not None:
            self._cancel_eviction(key)
            self.coordinator.abandon(key)
            removed = int(self.store.delete(key))
            if removed:
                logger.info(f"Invalidated cache: {key}")
            self.bus.notify(key)
            return removed

        for handle in self._eviction_timers.values():
            handle.cancel()
        self._eviction_timers.clear()
        for active in self.coordinator.active_keys():
            self.coordinator.abandon(active)
        removed = self.store.clear()
        logger.info(f"Cleared {removed} cache entries")
        self.bus.notify_all()
        return removed

    def prefetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        options: Optional[QueryOptions] = None,
        **overrides: Any,
    ) -> Optional[asyncio.Task]:
        """
        Warm the cache for a key nobody is watching yet.

        Does nothing if an entry already exists. If the result is still
        unobserved when it lands, it is evicted after ``cache_time``.

        Returns:
            The fetch task to await, or the running fetch when the entry
            exists only as an in-flight request; None if nothing runs
        """
        entry = self.store.get(key)
        if entry is not None:
            logger.debug(f"Prefetch skipped, entry exists: {key}")
            return entry.pending
        if options is None:
            options = self.default_options(**overrides)
        else:
            options = options.with_overrides(**overrides)
        logger.debug(f"Prefetching {key}")
        return self.coordinator.fetch(key, fetch_fn, options)

    async def refetch(self, key: str) -> bool:
        """
        Refetch a key on behalf of every bound observer.

        With no observer bound, the key's most recent fetch is repeated.

        Returns:
            False if there was nothing to refetch with
        """
        observers = [o for o in self._observers.get(key, []) if o.options.enabled]
        if observers:
            await asyncio.gather(*(o.refetch() for o in observers))
            return True

        last = self.coordinator.last_request(key)
        if last is None:
            return False
        fetch_fn, options = last
        await asyncio.shield(self.coordinator.fetch(key, fetch_fn, options))
        return True

    # ------------------------------------------------------------------
    # Consumer binding contract
    # ------------------------------------------------------------------

    def subscribe(self, key: str, on_change: Callable[[], None]) -> Callable[[], None]:
        """
        Observe a key without a query binding.

        Returns:
            Unsubscribe function; the last one out starts eviction
        """
        self._cancel_eviction(key)
        unsubscribe = self.bus.subscribe(key, on_change)

        def release() -> None:
            unsubscribe()
            if not self.bus.is_observed(key):
                self._schedule_eviction(key, self.settings.default_cache_time)

        return release

    def get_snapshot(self, key: str) -> QuerySnapshot:
        """Current view of a key, derived from the store."""
        entry = self.store.get(key)
        if entry is None:
            return QuerySnapshot()
        if entry.pending is not None:
            state = QueryState.VALIDATING if entry.has_value else QueryState.LOADING
        else:
            state = QueryState.SETTLED if entry.has_value else QueryState.IDLE
        return QuerySnapshot(
            data=entry.data,
            error=entry.error,
            is_loading=state == QueryState.LOADING,
            is_validating=state == QueryState.VALIDATING,
            state=state,
            updated_at=entry.timestamp,
        )

    # ------------------------------------------------------------------
    # Observer bookkeeping and eviction
    # ------------------------------------------------------------------

    def _attach(self, observer: QueryObserver) -> None:
        self._cancel_eviction(observer.key)
        self._observers.setdefault(observer.key, []).append(observer)

    def _detach(self, observer: QueryObserver) -> None:
        observers = self._observers.get(observer.key)
        if observers and observer in observers:
            observers.remove(observer)
            if not observers:
                del self._observers[observer.key]
        if not self.bus.is_observed(observer.key):
            self._schedule_eviction(observer.key, observer.options.cache_time)

    def _after_write(self, key: str, options: Optional[QueryOptions]) -> None:
        """Give unobserved writes (prefetch, orphaned fetches) an eviction deadline."""
        if self.bus.is_observed(key):
            return
        cache_time = options.cache_time if options is not None else self.settings.default_cache_time
        self._schedule_eviction(key, cache_time)

    def _schedule_eviction(self, key: str, delay: float) -> None:
        if key in self._eviction_timers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, eviction of {key} not scheduled")
            return
        self._eviction_timers[key] = loop.call_later(delay, self._evict, key)
        logger.debug(f"Eviction of {key} scheduled in {delay}s")

    def _cancel_eviction(self, key: str) -> None:
        handle = self._eviction_timers.pop(key, None)
        if handle is not None:
            handle.cancel()
            logger.debug(f"Eviction of {key} cancelled")

    def _evict(self, key: str) -> None:
        self._eviction_timers.pop(key, None)
        if self.bus.is_observed(key):
            return
        entry = self.store.get(key)
        if entry is not None and entry.pending is not None:
            # A rebind joins the running fetch; its write reschedules eviction
            self.store.drop_value(key)
            self.coordinator.orphan(key)
            self._stats["evictions"] += 1
            logger.info(f"Evicted {key}, in-flight fetch left to finish")
            return
        if self.store.delete(key):
            self._stats["evictions"] += 1
            logger.info(f"Evicted {key}")
        self.coordinator.forget(key)

    def _record_hit(self, key: str) -> None:
        self._stats["hits_fresh"] += 1

    def _record_miss(self, key: str) -> None:
        self._stats["misses"] += 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> List[asyncio.Task]:
        """
        Return the engine to its initial state.

        Unbinds every observer, cancels eviction timers and running fetches,
        and drops all entries and subscriptions.

        Returns:
            The cancelled fetch tasks
        """
        for observers in list(self._observers.values()):
            for observer in list(observers):
                observer.unbind()
        self._observers.clear()

        for handle in self._eviction_timers.values():
            handle.cancel()
        self._eviction_timers.clear()

        tasks = self.coordinator.cancel_all()
        self.store.clear()
        self.bus.clear()
        self._stats = self._empty_stats()
        logger.info(f"Engine reset ({len(tasks)} fetches cancelled)")
        return tasks

    async def close(self) -> None:
        """Reset, wait for cancelled fetches to finish, and refuse new bindings."""
        tasks = self.reset()
        self._closed = True
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """Metadata about one entry (no payload), or None if absent."""
        entry = self.store.get(key)
        if entry is None:
            return None
        age = entry.age(self.clock())
        return {
            "key": key,
            "hasValue": entry.has_value,
            "error": repr(entry.error) if entry.error is not None else None,
            "ageSeconds": round(age, 3) if age is not None else None,
            "pending": entry.pending is not None,
            "subscribers": self.bus.subscriber_count(key),
            "evictionScheduled": key in self._eviction_timers,
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        lookups = self._stats["hits_fresh"] + self._stats["misses"]
        hit_rate = (self._stats["hits_fresh"] / lookups * 100) if lookups > 0 else 0

        return {
            "entries": len(self.store),
            "observed_keys": len(self.bus.observed_keys()),
            "bound_observers": sum(len(o) for o in self._observers.values()),
            "pending_evictions": len(self._eviction_timers),
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "coordinator": self.coordinator.get_stats(),
        }
