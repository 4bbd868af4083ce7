"""
Thread-safe observer registry used for transport events.

Each event (``package_received``, ``stopped``, ``client_connected`` ...) owns
its own ``EventHandlers`` instance and therefore its own lock, so
subscribing to one event never contends with delivery of another.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable

from loguru import logger

from ...datastructures.type_aliases import SubscriptionHandle


class EventHandlers[S, A]:
    """Mapping of subscription handle to ``callback(sender, argument)``.

    Mutation happens under the registry lock; delivery iterates a snapshot
    taken under the lock and runs callbacks with the lock released, so a
    callback may subscribe or unsubscribe without deadlocking.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._handlers: dict[SubscriptionHandle, Callable[[S, A], None]] = {}
        self._handle_counter = itertools.count(1)

    def subscribe(self, callback: Callable[[S, A], None]) -> SubscriptionHandle:
        """Register ``callback`` and return the handle that removes it."""
        with self._lock:
            handle = next(self._handle_counter)
            self._handlers[handle] = callback
        logger.debug(f"Subscribed handler {handle} to '{self.name}'")
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Remove a subscription. Returns False if the handle was unknown."""
        with self._lock:
            removed = self._handlers.pop(handle, None) is not None
        if removed:
            logger.debug(f"Unsubscribed handler {handle} from '{self.name}'")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def snapshot(self) -> list[Callable[[S, A], None]]:
        with self._lock:
            return list(self._handlers.values())

    def emit(self, sender: S, argument: A) -> None:
        """Deliver to every subscriber in subscription order.

        Exceptions raised by a callback propagate to the emitting loop.
        """
        for callback in self.snapshot():
            callback(sender, argument)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __repr__(self) -> str:
        return f"EventHandlers(name={self.name!r}, subscribers={len(self)})"
