"""
UDP transport implementation for msgwire.

Each datagram carries exactly one package's encoded bytes, with no length
prefix; the datagram boundary is the frame boundary, so no framer is
involved. Datagrams larger than ``buffer_size`` are truncated by the OS, so
size the buffer for the largest package you expect.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
import threading
from dataclasses import dataclass
from types import TracebackType
from typing import Self

from loguru import logger

from ...datastructures.type_aliases import SocketAddress
from .cancellation import CancellationToken
from .defaults import ANY_ADDRESS
from .events import EventHandlers
from .factory import ProtocolSpec, TransportProtocol, register_transport
from .interfaces import (
    Package,
    TransportClosedError,
    TransportConfig,
    TransportConnectionError,
    TransportError,
    validate_buffer_size,
)
from .stream import address_family
from .threaded import ThreadedComponent


@dataclass(frozen=True, slots=True)
class ReceivedDatagram[P: Package]:
    """A decoded package together with the address that sent it."""

    package: P
    remote_address: SocketAddress


class UDPEndpoint[P: Package](ThreadedComponent):
    """Connectionless endpoint exchanging whole packages.

    Events:
        package_received: ``callback(endpoint, ReceivedDatagram)`` for each
            non-empty datagram, from the receive thread.
        stopped: ``callback(endpoint, error_or_none)`` when the loop ends.
    """

    is_secure = False

    def __init__(
        self,
        package_type: type[P],
        config: TransportConfig | None = None,
        local_address: SocketAddress = ANY_ADDRESS,
    ) -> None:
        super().__init__()
        if local_address is None:
            raise ValueError("local_address is required")
        if config is None:
            config = TransportConfig()

        self.package_type = package_type
        self.config = config
        self._buffer_size = config.buffer_size
        self._send_lock = threading.Lock()
        self.package_received: EventHandlers[Self, ReceivedDatagram[P]] = (
            EventHandlers("package_received")
        )

        self._socket = socket.socket(address_family(local_address), socket.SOCK_DGRAM)
        try:
            self._socket.bind(local_address)
        except OSError as e:
            self._socket.close()
            raise TransportError(f"Binding to {local_address} failed: {e}") from e

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @buffer_size.setter
    def buffer_size(self, value: int) -> None:
        self._buffer_size = validate_buffer_size(value)

    @property
    def socket(self) -> socket.socket:
        return self._socket

    @property
    def local_address(self) -> SocketAddress | None:
        try:
            return self._socket.getsockname()
        except OSError:
            return None

    def send(self, package: P, remote_address: SocketAddress) -> None:
        """Send ``package`` as a single datagram to ``remote_address``.

        Raises:
            TransportClosedError: If the endpoint was disposed
            TransportConnectionError: If the datagram cannot be sent
        """
        if package is None:
            raise ValueError("package is required")
        if remote_address is None:
            raise ValueError("remote_address is required")
        self._ensure_not_disposed()

        data = package.to_bytes()
        with self._send_lock:
            self._ensure_not_disposed()
            try:
                self._socket.sendto(data, remote_address)
            except OSError as e:
                if self._disposed:
                    raise TransportClosedError(
                        "UDPEndpoint closed while sending"
                    ) from e
                raise TransportConnectionError(
                    f"Sending datagram to {remote_address} failed: {e}"
                ) from e

    async def send_async(self, package: P, remote_address: SocketAddress) -> None:
        """Suspending variant of ``send`` with identical outcomes."""
        await asyncio.to_thread(self.send, package, remote_address)

    def _run_loop(self, cancellation: CancellationToken) -> None:
        while not cancellation.cancelled:
            try:
                data, remote_address = self._socket.recvfrom(self._buffer_size)
            except OSError as e:
                if self._disposed:
                    raise TransportClosedError(
                        "UDPEndpoint closed while receiving"
                    ) from e
                raise

            if self._disposed:
                raise TransportClosedError("UDPEndpoint closed while receiving")

            if not data:
                continue

            package = self.package_type.from_bytes(data)
            self.package_received.emit(self, ReceivedDatagram(package, remote_address))

    def dispose(self) -> None:
        """Release the socket. Safe to call more than once."""
        with self._state_lock:
            if self._disposed:
                return
            self._disposed = True

        # shutdown() wakes a thread blocked in recvfrom() on Linux
        with contextlib.suppress(OSError):
            self._socket.shutdown(socket.SHUT_RDWR)
        self._socket.close()
        logger.debug(f"{self!r} disposed")

    def close(self) -> None:
        self.dispose()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return (
            f"UDPEndpoint(package_type={self.package_type.__name__}, "
            f"running={self._running}, disposed={self._disposed})"
        )


_UDP_SPEC = ProtocolSpec(
    name="msgwire-udp",
    version="1.0",
    description="One package per UDP datagram, no framing",
    message_framing="datagram",
    connection_oriented=False,
    security_schemes=["none"],
    metadata={
        "wire_protocol": {
            "frame_format": "[payload] (the datagram is the frame)",
            "empty_datagram": "ignored by receivers",
        },
    },
)

# Register UDP transport
register_transport(TransportProtocol.UDP, UDPEndpoint, None, _UDP_SPEC)
