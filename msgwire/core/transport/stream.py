"""
Stream connection and listener machinery shared by TCP and TLS.

A ``StreamConnection`` wraps one connected socket (plain or TLS-wrapped), a
``LengthPrefixFramer`` and a serialized send path, and owns one receive
thread. A ``StreamListener`` owns a listening socket and turns accepted
sockets into connections, either on demand (``accept_one``) or from its own
accept thread (``start``).

Lifecycle:
    Created -> Connected -> Receiving -> Stopped / Disposed

Disposal is terminal. It shuts the socket down in both directions, which is
what unblocks a receive or accept thread stuck in a system call; the
cancellation token alone cannot do that.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import socket
import threading
from abc import abstractmethod
from collections.abc import Callable
from types import TracebackType
from typing import Self

from loguru import logger

from ...datastructures.type_aliases import SocketAddress
from .cancellation import CancellationToken
from .defaults import ANY_ADDRESS
from .events import EventHandlers
from .framing import LengthPrefixFramer
from .interfaces import (
    Package,
    TransportClosedError,
    TransportConfig,
    TransportConnectionError,
    TransportError,
    TransportStateError,
    validate_backlog,
    validate_buffer_size,
    validate_max_package_size,
)
from .threaded import ThreadedComponent


def address_family(address: SocketAddress) -> socket.AddressFamily:
    """Pick the socket family for a ``(host, port)`` tuple."""
    host = address[0]
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def configure_stream_socket(sock: socket.socket) -> None:
    """Apply keepalive options to a connected stream socket."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    except (OSError, AttributeError):
        # Ignore if platform doesn't support this option
        pass


class StreamConnection[P: Package](ThreadedComponent):
    """One bidirectional, length-framed package channel.

    Events:
        package_received: ``callback(connection, package)`` for every
            decoded package, in arrival order, from the receive thread.
        stopped: ``callback(connection, error_or_none)`` once per run of the
            receive loop.

    Example:
        connection = TCPConnection(BytesPackage)
        connection.connect(("127.0.0.1", 7000))
        connection.package_received.subscribe(lambda c, p: print(p.data))
        connection.start()
        connection.send(BytesPackage(b"ping"))
        ...
        connection.dispose()
    """

    def __init__(
        self,
        package_type: type[P],
        config: TransportConfig | None = None,
        local_address: SocketAddress | None = ANY_ADDRESS,
        *,
        sock: socket.socket | None = None,
    ) -> None:
        """Create an unconnected connection, or adopt an accepted socket.

        Args:
            package_type: Package class used to decode received payloads
            config: Transport configuration (defaults when omitted)
            local_address: Address to bind before connecting
            sock: Already-connected socket handed over by a listener; when
                given, ``local_address`` is ignored and the connection starts
                out connected
        """
        super().__init__()
        if config is None:
            config = TransportConfig()

        self.package_type = package_type
        self.config = config
        self._buffer_size = config.buffer_size
        self._framer = LengthPrefixFramer(config.max_package_size)
        self._framer.data_received.subscribe(self._on_data_received)
        self._send_lock = threading.Lock()
        self.package_received: EventHandlers[Self, P] = EventHandlers(
            "package_received"
        )

        if sock is not None:
            self._socket = sock
            self._connected = True
            configure_stream_socket(sock)
            return

        if local_address is None:
            raise ValueError("local_address is required")

        self._connected = False
        self._socket = socket.socket(address_family(local_address), socket.SOCK_STREAM)
        try:
            self._socket.bind(local_address)
        except OSError as e:
            self._socket.close()
            raise TransportError(f"Binding to {local_address} failed: {e}") from e

    # Properties

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._disposed

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @buffer_size.setter
    def buffer_size(self, value: int) -> None:
        self._buffer_size = validate_buffer_size(value)

    @property
    def max_package_size(self) -> int:
        return self._framer.max_payload_size

    @max_package_size.setter
    def max_package_size(self, value: int) -> None:
        self._framer.max_payload_size = value

    @property
    def socket(self) -> socket.socket:
        return self._socket

    @property
    def local_address(self) -> SocketAddress | None:
        try:
            return self._socket.getsockname()
        except OSError:
            return None

    @property
    def remote_address(self) -> SocketAddress | None:
        try:
            return self._socket.getpeername()
        except OSError:
            return None

    # Connecting

    def _prepare_connect(self) -> None:
        """Hook run before the socket connects; raise to refuse."""

    def _establish(self, sock: socket.socket) -> socket.socket:
        """Hook run after the socket connects; returns the socket to use."""
        return sock

    def connect(self, remote_address: SocketAddress) -> None:
        """Connect to ``remote_address`` and make the connection usable.

        Raises:
            ValueError: If no address is given
            TransportClosedError: If the connection was disposed
            TransportStateError: If already connected
            TransportConnectionError: If the peer is unreachable or the
                handshake is rejected; the connection is disposed
        """
        if remote_address is None:
            raise ValueError("remote_address is required")

        with self._state_lock:
            self._ensure_not_disposed()
            if self._connected:
                raise TransportStateError(f"{type(self).__name__} is already connected")

        self._prepare_connect()

        try:
            self._socket.connect(remote_address)
            self._socket = self._establish(self._socket)
        except OSError as e:
            self.dispose()
            raise TransportConnectionError(
                f"Connecting to {remote_address} failed: {e}"
            ) from e

        configure_stream_socket(self._socket)
        self._connected = True
        logger.debug(f"Connected {self.local_address} -> {remote_address}")

    async def connect_async(self, remote_address: SocketAddress) -> None:
        """Suspending variant of ``connect`` with identical outcomes."""
        await asyncio.to_thread(self.connect, remote_address)

    # Sending

    def send(self, package: P) -> None:
        """Encode, frame and write ``package`` as one uninterrupted write.

        Raises:
            TransportClosedError: If the connection was disposed
            TransportStateError: If the connection is not connected yet
            TransportConnectionError: If the write fails
        """
        if package is None:
            raise ValueError("package is required")
        self._ensure_not_disposed()
        if not self._connected:
            raise TransportStateError(f"{type(self).__name__} is not connected")

        frame = LengthPrefixFramer.wrap(package.to_bytes())

        with self._send_lock:
            self._ensure_not_disposed()
            try:
                self._socket.sendall(frame)
            except (OSError, ValueError) as e:
                if self._disposed:
                    raise TransportClosedError(
                        f"{type(self).__name__} closed while sending"
                    ) from e
                raise TransportConnectionError(f"Send failed: {e}") from e

    async def send_async(self, package: P) -> None:
        """Suspending variant of ``send`` with identical outcomes."""
        await asyncio.to_thread(self.send, package)

    # Receiving

    def _check_startable(self) -> None:
        if not self._connected:
            raise TransportStateError(
                f"Cannot start {type(self).__name__}: it is not connected"
            )

    def _run_loop(self, cancellation: CancellationToken) -> None:
        while not cancellation.cancelled:
            try:
                chunk = self._socket.recv(self._buffer_size)
            except (OSError, ValueError) as e:
                if self._disposed:
                    raise TransportClosedError(
                        f"{type(self).__name__} closed while receiving"
                    ) from e
                raise

            if not chunk:
                if self._disposed:
                    raise TransportClosedError(
                        f"{type(self).__name__} closed while receiving"
                    )
                logger.debug(f"{self!r} reached end of stream")
                return

            self._framer.feed(chunk)

    def _on_data_received(self, framer: LengthPrefixFramer, payload: bytes) -> None:
        package = self.package_type.from_bytes(payload)
        self.package_received.emit(self, package)

    # Disposal

    def dispose(self) -> None:
        """Release the socket. Safe to call more than once."""
        with self._state_lock:
            if self._disposed:
                return
            self._disposed = True

        with contextlib.suppress(OSError, ValueError):
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
            f"{type(self).__name__}(package_type={self.package_type.__name__}, "
            f"connected={self._connected}, running={self._running}, "
            f"disposed={self._disposed})"
        )


type ConnectionFactory[C] = Callable[[socket.socket, SocketAddress, TransportConfig], C]


class StreamListener[C](ThreadedComponent):
    """Listening socket producing connections of type ``C``.

    Connections handed out by ``accept_one`` or ``client_connected`` belong
    to the caller, who must dispose them.

    Events:
        client_connected: ``callback(listener, connection)`` from the accept
            thread for each inbound connection.
        stopped: ``callback(listener, error_or_none)`` when the accept loop
            ends. Disposing the listener ends it without an error.
    """

    def __init__(
        self,
        listen_address: SocketAddress,
        config: TransportConfig | None = None,
        connection_factory: ConnectionFactory[C] | None = None,
    ) -> None:
        """Bind the listening socket.

        Args:
            listen_address: Address to bind; port 0 picks an ephemeral port
            config: Transport configuration (defaults when omitted)
            connection_factory: Replaces how accepted sockets become
                connections; receives the socket, the peer address and the
                listener's current configuration
        """
        super().__init__()
        if listen_address is None:
            raise ValueError("listen_address is required")
        if config is None:
            config = TransportConfig()

        self.config = dataclasses.replace(config)
        self._connection_factory = connection_factory or self._create_connection
        self._listening = False
        self.client_connected: EventHandlers[Self, C] = EventHandlers(
            "client_connected"
        )

        self._socket = socket.socket(address_family(listen_address), socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self._socket.bind(listen_address)
        except OSError as e:
            self._socket.close()
            raise TransportError(
                f"Binding listener to {listen_address} failed: {e}"
            ) from e

    # Properties

    @property
    def backlog(self) -> int:
        return self.config.backlog

    @backlog.setter
    def backlog(self, value: int) -> None:
        self.config.backlog = validate_backlog(value)

    @property
    def buffer_size(self) -> int:
        return self.config.buffer_size

    @buffer_size.setter
    def buffer_size(self, value: int) -> None:
        self.config.buffer_size = validate_buffer_size(value)

    @property
    def max_package_size(self) -> int:
        return self.config.max_package_size

    @max_package_size.setter
    def max_package_size(self, value: int) -> None:
        self.config.max_package_size = validate_max_package_size(value)

    @property
    def listening(self) -> bool:
        return self._listening and not self._disposed

    @property
    def local_address(self) -> SocketAddress | None:
        try:
            return self._socket.getsockname()
        except OSError:
            return None

    # Accepting

    def listen(self) -> None:
        """Mark the socket passive using the configured backlog."""
        self._ensure_not_disposed()
        self._socket.listen(self.config.backlog)
        self._listening = True
        logger.info(f"{type(self).__name__} listening on {self.local_address}")

    @abstractmethod
    def _create_connection(
        self, sock: socket.socket, address: SocketAddress, config: TransportConfig
    ) -> C:
        """Default way of turning an accepted socket into a connection."""
        pass

    def _accept_socket(self) -> tuple[socket.socket, SocketAddress]:
        self._ensure_not_disposed()
        try:
            return self._socket.accept()
        except OSError as e:
            if self._disposed:
                raise TransportClosedError(
                    f"{type(self).__name__} closed while accepting"
                ) from e
            raise TransportConnectionError(f"Accept failed: {e}") from e

    def _wrap_accepted(self, sock: socket.socket, address: SocketAddress) -> C:
        try:
            return self._connection_factory(
                sock, address, dataclasses.replace(self.config)
            )
        except Exception as e:
            with contextlib.suppress(OSError):
                sock.close()
            raise TransportConnectionError(
                f"Setting up connection from {address} failed: {e!r}"
            ) from e

    def accept_one(self) -> C:
        """Block until one inbound connection arrives and return it.

        Must not be mixed with a running accept loop.

        Raises:
            TransportClosedError: If the listener is (or becomes) disposed
            TransportConnectionError: If accepting or the handshake fails
            TransportStateError: If the accept loop is running
        """
        if self._running:
            raise TransportStateError(
                f"{type(self).__name__} is running its accept loop; "
                "accept_one cannot be used alongside it"
            )
        sock, address = self._accept_socket()
        logger.debug(f"Accepted connection from {address}")
        return self._wrap_accepted(sock, address)

    async def accept_one_async(self) -> C:
        """Suspending variant of ``accept_one`` with identical outcomes."""
        return await asyncio.to_thread(self.accept_one)

    def _check_startable(self) -> None:
        if not self._listening:
            raise TransportStateError(
                f"Cannot start {type(self).__name__}: call listen() first"
            )

    def _run_loop(self, cancellation: CancellationToken) -> None:
        while not cancellation.cancelled:
            try:
                sock, address = self._accept_socket()
            except TransportClosedError:
                return

            try:
                connection = self._wrap_accepted(sock, address)
            except TransportConnectionError as e:
                logger.warning(f"Dropping inbound connection from {address}: {e}")
                continue

            logger.debug(f"Accepted connection from {address}")
            self.client_connected.emit(self, connection)

    # Disposal

    def dispose(self) -> None:
        """Close the listening socket, ending any pending accept."""
        with self._state_lock:
            if self._disposed:
                return
            self._disposed = True

        with contextlib.suppress(OSError):
            self._socket.shutdown(socket.SHUT_RDWR)
        self._socket.close()
        self._listening = False
        logger.info(f"{type(self).__name__} closed")

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
            f"{type(self).__name__}(address={self.local_address}, "
            f"running={self._running}, disposed={self._disposed})"
        )
