"""
TCP transport implementation for msgwire.

Protocol Specification:
- Message Framing: Length-prefixed binary protocol
- Frame Format: [4-byte length][message data]
- Length Encoding: Little-endian int32
- Max Message Size: Configurable per connection (default: 1MB)
- Connection: Persistent bidirectional TCP connection
- Keepalive: TCP SO_KEEPALIVE; an empty frame may serve as an
  application-level keepalive

External Python client:
```python
import socket
import struct

with socket.create_connection(("localhost", 7000)) as sock:
    message = b"Hello, msgwire!"
    sock.sendall(struct.pack("<i", len(message)) + message)

    header = sock.recv(4, socket.MSG_WAITALL)
    (length,) = struct.unpack("<i", header)
    print(sock.recv(length, socket.MSG_WAITALL))
```
"""

from __future__ import annotations

import socket

from ...datastructures.type_aliases import SocketAddress
from .defaults import DEFAULT_MAX_PACKAGE_SIZE, HEADER_SIZE
from .factory import ProtocolSpec, TransportProtocol, register_transport
from .interfaces import Package, TransportConfig
from .stream import ConnectionFactory, StreamConnection, StreamListener


class TCPConnection[P: Package](StreamConnection[P]):
    """Plain TCP connection; also the connector for the client role."""

    is_secure = False


class TCPListener[P: Package](StreamListener[TCPConnection[P]]):
    """TCP listener producing ``TCPConnection`` objects.

    Example:
        listener = TCPListener(("127.0.0.1", 0), BytesPackage)
        listener.listen()
        listener.client_connected.subscribe(on_client)
        listener.start(background=True)
    """

    is_secure = False

    def __init__(
        self,
        listen_address: SocketAddress,
        package_type: type[P],
        config: TransportConfig | None = None,
        connection_factory: ConnectionFactory[TCPConnection[P]] | None = None,
    ) -> None:
        self.package_type = package_type
        super().__init__(listen_address, config, connection_factory)

    def _create_connection(
        self, sock: socket.socket, address: SocketAddress, config: TransportConfig
    ) -> TCPConnection[P]:
        return TCPConnection(self.package_type, config, sock=sock)


_TCP_SPEC = ProtocolSpec(
    name="msgwire-tcp",
    version="1.0",
    description="Length-prefixed package framing over plain TCP",
    message_framing="length-prefixed",
    byte_order="little-endian",
    max_message_size=DEFAULT_MAX_PACKAGE_SIZE,
    connection_oriented=True,
    security_schemes=["none"],
    metadata={
        "wire_protocol": {
            "frame_format": "[4-byte length (little-endian int32)][payload]",
            "header_size": HEADER_SIZE,
            "empty_frame": "valid empty package; usable as keepalive",
            "invalid_length": "negative or above max size closes the connection",
        },
    },
)

# Register TCP transport
register_transport(TransportProtocol.TCP, TCPConnection, TCPListener, _TCP_SPEC)
