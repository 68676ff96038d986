"""
Environment trigger sources.

The engine never detects focus or connectivity itself. Whatever does (a UI
shell, a network monitor, the admin endpoint) calls ``emit()`` on a signal
that was injected into the engine.
"""
import logging
from typing import Callable, Dict, Protocol

logger = logging.getLogger("cache.signals")


class SignalSource(Protocol):
    """
    Interface for parameterless trigger sources.

    Implementations:
    - Signal: emitted explicitly by an external collaborator
    - NullSignal: never fires (server contexts)
    """

    name: str

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        ...


class Signal:
    """A trigger that fans out to its subscribers when emitted."""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: Dict[int, Callable[[], None]] = {}
        self._next_token = 0

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._callbacks[token] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return unsubscribe

    def emit(self) -> int:
        """
        Fire the signal.

        Returns:
            Number of callbacks invoked
        """
        callbacks = list(self._callbacks.values())
        logger.info(f"Signal '{self.name}' emitted ({len(callbacks)} listeners)")
        for callback in callbacks:
            callback()
        return len(callbacks)

    @property
    def listener_count(self) -> int:
        return len(self._callbacks)


class NullSignal:
    """A trigger that never fires."""

    def __init__(self, name: str = "null"):
        self.name = name

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        return _noop


def _noop() -> None:
    pass
