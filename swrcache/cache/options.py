"""
Per-query configuration and retry/delay policies.

Retry and delay settings accept either a fixed value or a function of the
attempt number. Both forms are normalized into a small policy object that
is evaluated once per attempt.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Union

from .errors import InvalidOptionError

DEFAULT_RETRY = 3
DEFAULT_RETRY_DELAY = 1.0


# ============================================================================
# Retry policies
# ============================================================================

class RetryPolicy:
    """Decides whether a failed fetch gets another attempt."""

    def should_retry(self, failure_count: int) -> bool:
        """
        Args:
            failure_count: Retries already made for this sequence (0 after the first failure)
        """
        raise NotImplementedError

    @staticmethod
    def fixed(count: int) -> "FixedRetry":
        return FixedRetry(count)

    @staticmethod
    def computed(fn: Callable[[int], bool]) -> "ComputedRetry":
        return ComputedRetry(fn)

    @classmethod
    def coerce(cls, value: Any) -> "RetryPolicy":
        """Turn an option value (bool, int, callable or policy) into a policy."""
        if isinstance(value, RetryPolicy):
            return value
        if isinstance(value, bool):
            return FixedRetry(DEFAULT_RETRY if value else 0)
        if isinstance(value, int):
            return FixedRetry(value)
        if callable(value):
            return ComputedRetry(value)
        raise InvalidOptionError("retry", value, "expected int, bool or callable")


@dataclass(frozen=True)
class FixedRetry(RetryPolicy):
    """Retry up to ``count`` times."""
    count: int

    def __post_init__(self):
        if self.count < 0:
            raise InvalidOptionError("retry", self.count, "must be >= 0")

    def should_retry(self, failure_count: int) -> bool:
        return failure_count < self.count


@dataclass(frozen=True)
class ComputedRetry(RetryPolicy):
    """Retry while ``fn(failure_count)`` returns True."""
    fn: Callable[[int], bool]

    def should_retry(self, failure_count: int) -> bool:
        return bool(self.fn(failure_count))


# ============================================================================
# Delay policies
# ============================================================================

class DelayPolicy:
    """Seconds to wait before the next attempt."""

    def delay_for(self, attempt: int) -> float:
        """
        Args:
            attempt: Number of the retry about to run (1 for the first retry)
        """
        raise NotImplementedError

    @staticmethod
    def fixed(seconds: float) -> "FixedDelay":
        return FixedDelay(seconds)

    @staticmethod
    def computed(fn: Callable[[int], float]) -> "ComputedDelay":
        return ComputedDelay(fn)

    @classmethod
    def coerce(cls, value: Any) -> "DelayPolicy":
        if isinstance(value, DelayPolicy):
            return value
        if isinstance(value, bool):
            raise InvalidOptionError("retry_delay", value, "expected seconds or callable")
        if isinstance(value, (int, float)):
            return FixedDelay(float(value))
        if callable(value):
            return ComputedDelay(value)
        raise InvalidOptionError("retry_delay", value, "expected seconds or callable")


@dataclass(frozen=True)
class FixedDelay(DelayPolicy):
    seconds: float

    def __post_init__(self):
        if self.seconds < 0:
            raise InvalidOptionError("retry_delay", self.seconds, "must be >= 0")

    def delay_for(self, attempt: int) -> float:
        return self.seconds


@dataclass(frozen=True)
class ComputedDelay(DelayPolicy):
    fn: Callable[[int], float]

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.fn(attempt)))


def exponential_backoff(base: float = 1.0, cap: float = 30.0) -> ComputedDelay:
    """Delay doubling with every retry: base, 2*base, 4*base ... up to cap."""
    return ComputedDelay(lambda attempt: min(base * 2 ** (attempt - 1), cap))


# ============================================================================
# Query options
# ============================================================================

FetchCallback = Optional[Callable[[Any], None]]


@dataclass
class QueryOptions:
    """
    Configuration recognized per query.

    Durations are in seconds.
    """
    stale_time: float = 0.0           # 0 = always refetch on bind
    cache_time: float = 300.0         # eviction grace period
    refetch_interval: Optional[float] = None
    refetch_on_focus: bool = False
    refetch_on_reconnect: bool = True
    retry: Union[int, bool, Callable[[int], bool], RetryPolicy] = DEFAULT_RETRY
    retry_delay: Union[float, Callable[[int], float], DelayPolicy] = DEFAULT_RETRY_DELAY
    initial_data: Any = None
    enabled: bool = True
    dedupe: bool = True
    on_success: FetchCallback = None
    on_error: FetchCallback = None
    # Environment triggers skip fresh entries only when these are set
    focus_respects_stale_time: bool = True
    reconnect_respects_stale_time: bool = False

    retry_policy: RetryPolicy = field(init=False, repr=False)
    delay_policy: DelayPolicy = field(init=False, repr=False)

    def __post_init__(self):
        if self.stale_time < 0:
            raise InvalidOptionError("stale_time", self.stale_time, "must be >= 0")
        if self.cache_time < 0:
            raise InvalidOptionError("cache_time", self.cache_time, "must be >= 0")
        if self.refetch_interval is not None and self.refetch_interval <= 0:
            raise InvalidOptionError(
                "refetch_interval", self.refetch_interval, "must be > 0 or None"
            )
        self.retry_policy = RetryPolicy.coerce(self.retry)
        self.delay_policy = DelayPolicy.coerce(self.retry_delay)

    def with_overrides(self, **overrides: Any) -> "QueryOptions":
        """Return a copy with some fields replaced."""
        if not overrides:
            return self
        return replace(self, **overrides)

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "QueryOptions":
        """
        Build options from engine-wide defaults.

        Args:
            settings: A ``config.settings.Settings`` instance
            **overrides: Fields that take precedence over the settings
        """
        values = {
            "stale_time": settings.default_stale_time,
            "cache_time": settings.default_cache_time,
            "refetch_interval": settings.default_refetch_interval,
            "refetch_on_focus": settings.default_refetch_on_focus,
            "refetch_on_reconnect": settings.default_refetch_on_reconnect,
            "retry": settings.default_retry,
            "retry_delay": settings.default_retry_delay,
            "dedupe": settings.default_dedupe,
        }
        values.update(overrides)
        return cls(**values)
