"""
Shared lifecycle for transports that run one background loop.

Connections, listeners and datagram endpoints each own exactly one worker
thread. This base class provides the start-once guard, the disposed guard,
the running flag and the single ``stopped`` notification that ends every
loop.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Self

from loguru import logger

from .cancellation import CancellationToken
from .events import EventHandlers
from .interfaces import TransportClosedError, TransportStateError


class ThreadedComponent(ABC):
    """Base for anything with a ``start``-able background loop.

    Subclasses implement ``_run_loop``. Returning from it is a clean stop;
    raising is a failure. Either way the running flag is cleared and
    ``stopped`` fires exactly once with the error (or ``None``).
    """

    def __init__(self) -> None:
        self._state_lock = threading.Lock()
        self._running = False
        self._disposed = False
        self._thread: threading.Thread | None = None
        self.stopped: EventHandlers[Self, BaseException | None] = EventHandlers(
            "stopped"
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise TransportClosedError(f"{type(self).__name__} is closed")

    def _check_startable(self) -> None:
        """Hook for subclasses that need more state before starting."""

    def start(
        self, cancellation: CancellationToken | None = None, background: bool = False
    ) -> None:
        """Start the background loop in a new thread.

        Args:
            cancellation: Token polled before every blocking call. A fresh,
                never-cancelled token is used when omitted.
            background: Mark the worker as a daemon thread.

        Raises:
            TransportClosedError: If the component was disposed
            TransportStateError: If the loop is already running
        """
        with self._state_lock:
            self._ensure_not_disposed()
            if self._running:
                raise TransportStateError(
                    f"Cannot start {type(self).__name__}: it is already running"
                )
            self._check_startable()

            token = cancellation if cancellation is not None else CancellationToken()
            self._running = True
            self._thread = threading.Thread(
                target=self._run,
                args=(token,),
                name=f"{type(self).__name__}-loop",
                daemon=background,
            )
            self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread. Returns True once it has finished."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run(self, cancellation: CancellationToken) -> None:
        error: BaseException | None = None
        try:
            self._run_loop(cancellation)
        except Exception as e:
            error = e
            logger.warning(f"{self!r} loop stopped with error: {e!r}")
        else:
            logger.debug(f"{self!r} loop stopped cleanly")
        finally:
            self._running = False

        try:
            self.stopped.emit(self, error)
        except Exception:
            logger.exception(f"'stopped' handler raised for {self!r}")

    @abstractmethod
    def _run_loop(self, cancellation: CancellationToken) -> None:
        """Body of the background loop; polls ``cancellation`` each pass."""
        pass
