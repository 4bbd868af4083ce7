"""
msgwire - whole-message transport over TCP, TLS and UDP

Peers exchange discrete packages instead of raw byte streams. On stream
transports each package travels as a length-prefixed frame; on UDP each
datagram is one package.

## Architecture

- **core.transport**: framer, connections, listeners, datagram endpoint,
  protocol registry and factory
- **core.packages**: stock package types (raw bytes, UTF-8 text)
- **config**: environment-driven settings for the command line tools
- **cli**: echo server and sender

## Quick Start

```python
from msgwire import TCPListener, TransportFactory, TextPackage

listener = TCPListener(("127.0.0.1", 0), TextPackage)
listener.listen()

connection = TransportFactory.create_connection(
    f"tcp://127.0.0.1:{listener.local_address[1]}", TextPackage
)
server_side = listener.accept_one()
server_side.package_received.subscribe(lambda conn, pkg: print(pkg.text))
server_side.start(background=True)

connection.send(TextPackage("ping"))
```
"""

from .core.packages import BytesPackage, TextPackage
from .core.transport import (
    CancellationToken,
    LengthPrefixFramer,
    Package,
    ProtocolViolationError,
    ReceivedDatagram,
    SecurityConfig,
    TCPConnection,
    TCPListener,
    TLSConnection,
    TLSListener,
    TransportClosedError,
    TransportConfig,
    TransportConnectionError,
    TransportError,
    TransportFactory,
    TransportProtocol,
    TransportStateError,
    UDPEndpoint,
)

__version__ = "1.0.0"

__all__ = [
    "BytesPackage",
    "CancellationToken",
    "LengthPrefixFramer",
    "Package",
    "ProtocolViolationError",
    "ReceivedDatagram",
    "SecurityConfig",
    "TCPConnection",
    "TCPListener",
    "TLSConnection",
    "TLSListener",
    "TextPackage",
    "TransportClosedError",
    "TransportConfig",
    "TransportConnectionError",
    "TransportError",
    "TransportFactory",
    "TransportProtocol",
    "TransportStateError",
    "UDPEndpoint",
]
