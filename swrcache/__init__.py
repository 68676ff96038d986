"""In-process data-fetching and caching engine."""
from .cache import CacheEngine, QueryObserver, QueryOptions, Signal, make_cache_key

__version__ = "0.1.0"

__all__ = ["CacheEngine", "QueryObserver", "QueryOptions", "Signal", "make_cache_key"]
