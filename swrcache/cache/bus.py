"""
Per-key change notifications.

Notifications carry no payload: subscribers re-read the store when called.
"""
import logging
from typing import Callable, Dict, List

logger = logging.getLogger("cache.bus")

Listener = Callable[[], None]


class NotificationBus:
    """
    Ordered subscriber sets keyed by cache key.

    Callbacks run synchronously in registration order. A callback that raises
    is a caller bug and the exception propagates out of ``notify``.
    """

    def __init__(self):
        # dict keeps insertion order, so it doubles as an ordered set
        self._subscribers: Dict[str, Dict[int, Listener]] = {}
        self._next_token = 0

    def subscribe(self, key: str, callback: Listener) -> Callable[[], None]:
        """
        Register a callback for a key.

        Returns:
            A function that removes the registration. Calling it more than
            once is harmless.
        """
        token = self._next_token
        self._next_token += 1
        self._subscribers.setdefault(key, {})[token] = callback
        logger.debug(f"Subscribed to {key} (subscribers: {len(self._subscribers[key])})")

        def unsubscribe() -> None:
            listeners = self._subscribers.get(key)
            if listeners is None or token not in listeners:
                return
            del listeners[token]
            if not listeners:
                del self._subscribers[key]
                logger.debug(f"Last subscriber left {key}")

        return unsubscribe

    def notify(self, key: str) -> int:
        """
        Call every subscriber of a key.

        Returns:
            Number of callbacks invoked
        """
        listeners = self._subscribers.get(key)
        if not listeners:
            return 0
        # Callbacks may (un)subscribe while we iterate
        snapshot = list(listeners.values())
        for callback in snapshot:
            callback()
        return len(snapshot)

    def notify_all(self) -> int:
        """Notify every observed key. Returns the number of keys notified."""
        keys = self.observed_keys()
        for key in keys:
            self.notify(key)
        return len(keys)

    def is_observed(self, key: str) -> bool:
        return bool(self._subscribers.get(key))

    def subscriber_count(self, key: str) -> int:
        return len(self._subscribers.get(key, ()))

    def observed_keys(self) -> List[str]:
        return list(self._subscribers.keys())

    def clear(self) -> None:
        """Drop every registration."""
        self._subscribers.clear()
