"""
msgwire Transport Layer

Symmetric client/server primitives over TCP, TLS-over-TCP and UDP that
exchange whole packages instead of raw byte streams.

The transport layer is designed to be:
- Message oriented - a length-prefixed framer turns any chunking of the byte
  stream back into whole packages, in order
- Thread based - every connection, listener and endpoint owns one receive or
  accept thread and reports through thread-safe events
- Explicit about shutdown - cancellation is cooperative, disposal is what
  unblocks a pending read or accept

Example Usage:
    listener = TCPListener(("127.0.0.1", 0), TextPackage)
    listener.listen()
    listener.client_connected.subscribe(on_client)
    listener.start(background=True)

    connection = TransportFactory.create_connection(
        f"tcp://127.0.0.1:{listener.local_address[1]}", TextPackage
    )
    connection.start(background=True)
    connection.send(TextPackage("ping"))
"""

from .cancellation import CancellationToken
from .events import EventHandlers
from .factory import ProtocolSpec, TransportFactory, TransportProtocol
from .framing import LengthPrefixFramer
from .interfaces import (
    ConnectionAcceptor,
    Package,
    PackageSender,
    ProtocolViolationError,
    SecurityConfig,
    TransportClosedError,
    TransportConfig,
    TransportConnectionError,
    TransportError,
    TransportStateError,
)
from .stream import StreamConnection, StreamListener
from .tcp_transport import TCPConnection, TCPListener
from .tls_transport import TLSConnection, TLSListener
from .udp_transport import ReceivedDatagram, UDPEndpoint

__all__ = [
    "CancellationToken",
    "ConnectionAcceptor",
    "EventHandlers",
    "LengthPrefixFramer",
    "Package",
    "PackageSender",
    "ProtocolSpec",
    "ProtocolViolationError",
    "ReceivedDatagram",
    "SecurityConfig",
    "StreamConnection",
    "StreamListener",
    "TCPConnection",
    "TCPListener",
    "TLSConnection",
    "TLSListener",
    "TransportClosedError",
    "TransportConfig",
    "TransportConnectionError",
    "TransportError",
    "TransportFactory",
    "TransportProtocol",
    "TransportStateError",
    "UDPEndpoint",
]
