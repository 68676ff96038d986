"""
Stale-while-revalidate caching engine with request deduplication, retries and eviction.
"""
from .core import CacheEntry, CacheStore, QuerySnapshot, QueryState, make_cache_key
from .bus import NotificationBus
from .errors import CacheError, InvalidOptionError, ObserverStateError
from .options import (
    ComputedDelay,
    ComputedRetry,
    DelayPolicy,
    FixedDelay,
    FixedRetry,
    QueryOptions,
    RetryPolicy,
    exponential_backoff,
)
from .signals import NullSignal, Signal, SignalSource
from .coalescer import FetchCoordinator
from .lifecycle import QueryObserver
from .manager import CacheEngine
from .presets import PRESET_CONFIG, DataCategory, get_options_for_category

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStore",
    "QuerySnapshot",
    "QueryState",
    "make_cache_key",
    # Notifications
    "NotificationBus",
    # Errors
    "CacheError",
    "InvalidOptionError",
    "ObserverStateError",
    # Options
    "QueryOptions",
    "RetryPolicy",
    "FixedRetry",
    "ComputedRetry",
    "DelayPolicy",
    "FixedDelay",
    "ComputedDelay",
    "exponential_backoff",
    # Environment triggers
    "Signal",
    "NullSignal",
    "SignalSource",
    # Fetching
    "FetchCoordinator",
    "QueryObserver",
    # Engine
    "CacheEngine",
    # Presets
    "DataCategory",
    "PRESET_CONFIG",
    "get_options_for_category",
]
