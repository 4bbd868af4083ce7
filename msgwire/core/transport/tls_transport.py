"""
TLS-over-TCP transport implementation for msgwire.

TLS is a pure transport substitution underneath the framer: once the
handshake completes, frames and package delivery are identical to plain TCP.

Handshake rules:
- The accepting side always presents its certificate chain.
- The initiating side validates the peer chain and host name, and rejects
  the connection on any validation failure unless ``verify_cert`` is off.
- TLS 1.2 is the minimum protocol version.
- The handshake happens inside ``connect`` / ``accept_one``, before the
  connection is handed to the caller.
"""

from __future__ import annotations

import socket
import ssl

from loguru import logger

from ...datastructures.type_aliases import SocketAddress
from .defaults import ANY_ADDRESS, DEFAULT_MAX_PACKAGE_SIZE, HEADER_SIZE
from .factory import ProtocolSpec, TransportProtocol, register_transport
from .interfaces import Package, TransportConfig, TransportStateError
from .stream import ConnectionFactory, StreamConnection, StreamListener


def tls_handshake(
    context: ssl.SSLContext,
    sock: socket.socket,
    *,
    server_side: bool,
    server_hostname: str | None = None,
    timeout: float | None = None,
) -> ssl.SSLSocket:
    """Wrap a connected socket and complete the handshake.

    ``timeout`` bounds the handshake only; the returned socket is blocking.

    Raises:
        ssl.SSLError: If the handshake is rejected
        TimeoutError: If the peer does not complete the handshake in time
    """
    sock.settimeout(timeout)
    tls_sock = context.wrap_socket(
        sock,
        server_side=server_side,
        server_hostname=None if server_side else server_hostname,
    )
    tls_sock.settimeout(None)
    logger.debug(
        f"TLS handshake complete ({'server' if server_side else 'client'} side, "
        f"{tls_sock.version()})"
    )
    return tls_sock


class TLSConnection[P: Package](StreamConnection[P]):
    """TLS-wrapped stream connection; also the connector for the client role."""

    is_secure = True

    def __init__(
        self,
        package_type: type[P],
        config: TransportConfig | None = None,
        local_address: SocketAddress | None = ANY_ADDRESS,
        *,
        server_hostname: str | None = None,
        sock: socket.socket | None = None,
    ) -> None:
        """Create an unconnected TLS connection, or adopt an established one.

        Args:
            package_type: Package class used to decode received payloads
            config: Transport configuration; ``config.security`` controls
                certificate validation
            local_address: Address to bind before connecting
            server_hostname: Name the server certificate must match; falls
                back to ``config.security.server_hostname``
            sock: TLS socket whose handshake already completed
        """
        super().__init__(package_type, config, local_address, sock=sock)
        self.server_hostname = server_hostname or self.config.security.server_hostname
        self._ssl_context: ssl.SSLContext | None = None

    @classmethod
    def from_accepted(
        cls,
        sock: socket.socket,
        package_type: type[P],
        config: TransportConfig,
        context: ssl.SSLContext,
    ) -> TLSConnection[P]:
        """Run the server-side handshake on an accepted socket."""
        tls_sock = tls_handshake(
            context,
            sock,
            server_side=True,
            timeout=config.security.handshake_timeout,
        )
        return cls(package_type, config, sock=tls_sock)

    def _prepare_connect(self) -> None:
        context = self.config.security.create_client_context()
        if context.check_hostname and not self.server_hostname:
            raise ValueError(
                "server_hostname is required when certificate verification is enabled"
            )
        self._ssl_context = context

    def _establish(self, sock: socket.socket) -> socket.socket:
        if self._ssl_context is None:
            raise TransportStateError("TLS client context was not prepared")
        return tls_handshake(
            self._ssl_context,
            sock,
            server_side=False,
            server_hostname=self.server_hostname,
            timeout=self.config.security.handshake_timeout,
        )

    @property
    def tls_version(self) -> str | None:
        if isinstance(self._socket, ssl.SSLSocket):
            return self._socket.version()
        return None

    @property
    def peer_certificate(self) -> dict | None:
        if isinstance(self._socket, ssl.SSLSocket):
            try:
                return self._socket.getpeercert()
            except (OSError, ValueError):
                return None
        return None


class TLSListener[P: Package](StreamListener[TLSConnection[P]]):
    """TLS listener producing ``TLSConnection`` objects.

    The server certificate comes from ``config.security`` (either a ready
    ``ssl_context`` or ``cert_file``/``key_file``) and is loaded eagerly, so
    a missing or unreadable certificate fails at construction.
    """

    is_secure = True

    def __init__(
        self,
        listen_address: SocketAddress,
        package_type: type[P],
        config: TransportConfig | None = None,
        connection_factory: ConnectionFactory[TLSConnection[P]] | None = None,
    ) -> None:
        if config is None:
            config = TransportConfig()
        self.package_type = package_type
        self._ssl_context = config.security.create_server_context()
        super().__init__(listen_address, config, connection_factory)

    @property
    def ssl_context(self) -> ssl.SSLContext:
        return self._ssl_context

    def _create_connection(
        self, sock: socket.socket, address: SocketAddress, config: TransportConfig
    ) -> TLSConnection[P]:
        return TLSConnection.from_accepted(
            sock, self.package_type, config, self._ssl_context
        )


_TLS_SPEC = ProtocolSpec(
    name="msgwire-tcps",
    version="1.0",
    description="Length-prefixed package framing over TLS-wrapped TCP",
    message_framing="length-prefixed",
    byte_order="little-endian",
    max_message_size=DEFAULT_MAX_PACKAGE_SIZE,
    connection_oriented=True,
    security_schemes=["TLS"],
    metadata={
        "wire_protocol": {
            "frame_format": "[4-byte length (little-endian int32)][payload]",
            "header_size": HEADER_SIZE,
            "encryption": "TLS layer provides encryption",
        },
        "tls_config": {
            "tls_versions": ["1.2", "1.3"],
            "server_certificate": "always presented by the accepting side",
            "peer_validation": "initiating side rejects any validation failure",
        },
    },
)

# Register TLS transport
register_transport(TransportProtocol.TCP_SECURE, TLSConnection, TLSListener, _TLS_SPEC)
