"""Cooperative cancellation for background transport loops."""

from __future__ import annotations

import threading


class CancellationToken:
    """A one-way flag polled by loops before each blocking read or accept.

    Cancelling never interrupts a read that is already blocked; dispose the
    transport to force that read to fail.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; returns the flag."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
