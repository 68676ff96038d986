"""
Exceptions raised for misuse of the cache engine API.

Fetch failures are never raised through these types; they are stored on the
cache entry and surfaced as ``snapshot.error``.
"""


class CacheError(Exception):
    """Base class for cache engine errors."""


class InvalidOptionError(CacheError, ValueError):
    """A query option has a value the engine cannot honor."""

    def __init__(self, option: str, value, reason: str):
        self.option = option
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {option}={value!r}: {reason}")


class ObserverStateError(CacheError, RuntimeError):
    """An observer was used after its engine was closed."""
