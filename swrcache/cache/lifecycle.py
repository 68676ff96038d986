"""
Per-consumer query binding.

A QueryObserver decides when its key needs fetching (bind, staleness,
explicit refetch, polling, environment triggers) and keeps a local snapshot
that is refreshed whenever the bus reports a change for its key. It never
writes to the store itself; fetches go through the engine's coordinator.
"""
import asyncio
import logging
from dataclasses import fields, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .core import QuerySnapshot, QueryState
from .errors import ObserverStateError
from .options import QueryOptions

if TYPE_CHECKING:
    from .coalescer import FetchFn
    from .manager import CacheEngine

logger = logging.getLogger("cache.lifecycle")

ChangeListener = Callable[[QuerySnapshot], None]


class QueryObserver:
    """
    One consumer's view of one cache key.

    States: IDLE -> LOADING -> SETTLED -> VALIDATING -> SETTLED.
    VALIDATING means a refetch is running while the previous data stays
    visible (stale-while-revalidate).

    Usage:
        observer = engine.query("user:1", load_user, stale_time=5)
        observer.subscribe(lambda snap: render(snap.data))
        ...
        observer.unbind()
    """

    def __init__(
        self,
        engine: "CacheEngine",
        key: str,
        fetch_fn: "FetchFn",
        options: QueryOptions,
    ):
        self._engine = engine
        self.key = key
        self.fetch_fn = fetch_fn
        self.options = options

        self._snapshot = QuerySnapshot(data=options.initial_data)
        self._listeners: Dict[int, ChangeListener] = {}
        self._next_token = 0
        self._cleanups: List[Callable[[], None]] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._bound = False

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    @property
    def data(self) -> Any:
        return self._snapshot.data

    @property
    def error(self) -> Optional[BaseException]:
        return self._snapshot.error

    @property
    def is_loading(self) -> bool:
        return self._snapshot.is_loading

    @property
    def is_validating(self) -> bool:
        return self._snapshot.is_validating

    @property
    def state(self) -> QueryState:
        return self._snapshot.state

    @property
    def is_bound(self) -> bool:
        return self._bound

    def get_snapshot(self) -> QuerySnapshot:
        return self._snapshot

    def subscribe(self, on_change: ChangeListener) -> Callable[[], None]:
        """
        Get called with the new snapshot whenever it changes.

        Returns:
            A function that removes the listener
        """
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = on_change

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(self) -> "QueryObserver":
        """
        Attach to the key: subscribe, then fetch unless a fresh entry exists.

        Binding an already bound observer does nothing.
        """
        if self._bound:
            return self
        if self._engine.closed:
            raise ObserverStateError(f"Cannot bind {self.key}: engine is closed")

        engine = self._engine
        self._bound = True
        engine._attach(self)
        self._cleanups.append(engine.bus.subscribe(self.key, self._on_store_change))
        if self.options.refetch_on_focus:
            self._cleanups.append(engine.focus_signal.subscribe(self._on_focus))
        if self.options.refetch_on_reconnect:
            self._cleanups.append(engine.reconnect_signal.subscribe(self._on_reconnect))

        entry = engine.store.get(self.key)
        now = engine.clock()
        if entry is not None and entry.is_fresh(now, self.options.stale_time):
            engine._record_hit(self.key)
            logger.debug(f"Bind {self.key}: fresh entry [age={entry.age(now):.1f}s]")
            self._update(
                data=entry.data,
                error=entry.error,
                state=QueryState.SETTLED,
                updated_at=entry.timestamp,
            )
        elif not self.options.enabled:
            if entry is not None and entry.has_value:
                self._update(
                    data=entry.data,
                    error=entry.error,
                    state=QueryState.SETTLED,
                    updated_at=entry.timestamp,
                )
        else:
            engine._record_miss(self.key)
            if entry is not None and entry.has_value:
                # Serve the stale value while refetching
                self._update(data=entry.data, error=entry.error, updated_at=entry.timestamp)
            self._request_fetch()

        if self.options.refetch_interval is not None and self.options.enabled:
            self._poll_task = asyncio.get_running_loop().create_task(
                self._poll(self.options.refetch_interval),
                name=f"swrcache-poll:{self.key}",
            )
        return self

    def unbind(self) -> None:
        """
        Detach from the key.

        In-flight fetches keep running. If this was the key's last subscriber
        the engine starts the eviction timer.
        """
        if not self._bound:
            return
        self._bound = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            cleanup()
        self._engine._detach(self)
        logger.debug(f"Unbound from {self.key}")

    async def __aenter__(self) -> "QueryObserver":
        return self.bind()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.unbind()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def refetch(self) -> None:
        """
        Fetch again while keeping the current data visible.

        Resolves once the (possibly shared) fetch has settled. Does nothing
        for disabled queries.
        """
        task = self._request_fetch()
        if task is not None:
            await asyncio.shield(task)

    def mutate(self, value: Any) -> Any:
        """Optimistically write a value (or ``updater(current)``) for this key."""
        return self._engine.mutate(self.key, value)

    def _request_fetch(self) -> Optional[asyncio.Task]:
        if not self.options.enabled:
            return None
        state = self._snapshot.state
        if state != QueryState.LOADING:
            visible = state != QueryState.IDLE or self._snapshot.data is not None
            self._update(state=QueryState.VALIDATING if visible else QueryState.LOADING)
        return self._engine.coordinator.fetch(self.key, self.fetch_fn, self.options)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _on_store_change(self) -> None:
        entry = self._engine.store.get(self.key)
        if entry is None:
            # Invalidated: refetch, keeping what we already show
            logger.debug(f"Entry for {self.key} removed, refetching")
            self._request_fetch()
            return

        state = self._snapshot.state
        if entry.pending is None and state in (QueryState.LOADING, QueryState.VALIDATING):
            state = QueryState.SETTLED
        elif entry.pending is None and state == QueryState.IDLE and entry.has_value:
            state = QueryState.SETTLED
        self._update(
            data=entry.data,
            error=entry.error,
            state=state,
            updated_at=entry.timestamp,
        )

    def _on_focus(self) -> None:
        self._on_trigger("focus", self.options.focus_respects_stale_time)

    def _on_reconnect(self) -> None:
        self._on_trigger("reconnect", self.options.reconnect_respects_stale_time)

    def _on_trigger(self, name: str, respects_stale_time: bool) -> None:
        if not self._bound:
            return
        if respects_stale_time:
            entry = self._engine.store.get(self.key)
            if entry is not None and entry.is_fresh(self._engine.clock(), self.options.stale_time):
                logger.debug(f"Ignoring {name} for {self.key}: entry is fresh")
                return
        logger.debug(f"Refetching {self.key} on {name}")
        self._request_fetch()

    async def _poll(self, interval: float) -> None:
        while self._bound:
            await asyncio.sleep(interval)
            if self._bound:
                self._request_fetch()

    # ------------------------------------------------------------------

    def _update(self, **changes: Any) -> None:
        state = changes.get("state", self._snapshot.state)
        changes["is_loading"] = state == QueryState.LOADING
        changes["is_validating"] = state == QueryState.VALIDATING
        snapshot = replace(self._snapshot, **changes)
        # Identity, not equality: cached payloads may not support ==
        if all(
            getattr(snapshot, f.name) is getattr(self._snapshot, f.name)
            for f in fields(QuerySnapshot)
        ):
            return
        self._snapshot = snapshot
        for listener in list(self._listeners.values()):
            listener(snapshot)
