"""
Core cache data structures.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger("cache.store")


class QueryState(Enum):
    """Lifecycle states of a bound query observer."""
    IDLE = "idle"               # Bound but nothing fetched (disabled query)
    LOADING = "loading"         # First fetch, no data to show yet
    SETTLED = "settled"         # Last fetch finished (success or error)
    VALIDATING = "validating"   # Background refetch, stale data still visible


@dataclass
class CacheEntry:
    """
    Stored state for one cache key.

    ``pending`` is the in-flight fetch task for the key. It is only used for
    deduplication and never leaves the engine.
    """
    data: Any = None
    error: Optional[BaseException] = None
    timestamp: Optional[float] = None  # None until data or error is written
    pending: Optional["asyncio.Task"] = None

    @property
    def has_value(self) -> bool:
        """True once data or an error has been written."""
        return self.timestamp is not None

    def age(self, now: float) -> Optional[float]:
        """Seconds since the last write, or None if never written."""
        if self.timestamp is None:
            return None
        return now - self.timestamp

    def is_fresh(self, now: float, stale_time: float) -> bool:
        """Check if the entry was written less than ``stale_time`` ago."""
        age = self.age(now)
        return age is not None and age < stale_time


@dataclass(frozen=True)
class QuerySnapshot:
    """
    What a consumer sees for one key at one instant.
    """
    data: Any = None
    error: Optional[BaseException] = None
    is_loading: bool = False
    is_validating: bool = False
    state: QueryState = QueryState.IDLE
    updated_at: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "data": self.data,
            "error": repr(self.error) if self.error is not None else None,
            "isLoading": self.is_loading,
            "isValidating": self.is_validating,
            "state": self.state.value,
            "updatedAt": self.updated_at,
        }


class CacheStore:
    """
    Keyed map of cache entries.

    The store only mutates its map. Scheduling fetches and emitting change
    notifications is the job of its callers.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(
        self,
        key: str,
        data: Any,
        error: Optional[BaseException],
        timestamp: float,
    ) -> CacheEntry:
        """
        Replace data, error and timestamp for a key.

        An in-flight ``pending`` task on the existing entry is kept.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(data=data, error=error, timestamp=timestamp)
            self._entries[key] = entry
        else:
            entry.data = data
            entry.error = error
            entry.timestamp = timestamp
        return entry

    def set_pending(self, key: str, handle: "asyncio.Task") -> CacheEntry:
        """Record the in-flight fetch for a key, creating an empty entry if needed."""
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry()
            self._entries[key] = entry
        entry.pending = handle
        return entry

    def clear_pending(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.pending = None

    def drop_value(self, key: str) -> bool:
        """
        Forget data, error and timestamp for a key but keep its ``pending`` task.

        Returns:
            True if the entry existed
        """
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.data = None
        entry.error = None
        entry.timestamp = None
        return True

    def delete(self, key: str) -> bool:
        """
        Remove an entry entirely.

        Returns:
            True if the entry existed
        """
        if key in self._entries:
            del self._entries[key]
            logger.debug(f"Deleted entry: {key}")
            return True
        return False

    def clear(self) -> int:
        """
        Remove every entry.

        Returns:
            Number of entries removed
        """
        count = len(self._entries)
        self._entries.clear()
        return count

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))


def make_cache_key(prefix: str, *parts: Any, **params: Any) -> str:
    """
    Build a deterministic cache key.

    Positional parts are joined with ``:``; keyword params with a value are
    appended in sorted order, so the same query always maps to the same key.

    Examples:
        make_cache_key("user", 1)                 -> "user:1"
        make_cache_key("fixtures", league=39)     -> "fixtures:[('league', 39)]"
    """
    key = ":".join([prefix] + [str(part) for part in parts])
    sorted_params = sorted((k, v) for k, v in params.items() if v is not None)
    if sorted_params:
        key = f"{key}:{sorted_params}"
    return key
